#!/usr/bin/env python3
"""
Seed script - initializes the database, registers the built-in prompts and
optionally a sample watchlist.
Run with: python -m kenkyu.seed
"""
import argparse

from kenkyu.database import init_db, SessionLocal
from kenkyu.models import CostLog, Prompt, ResearchJob, Stock

EQUITY_SCREEN_TEMPLATE = """You are a senior equity research analyst at a top-tier investment bank. Conduct a comprehensive stock screening and discovery analysis as of {{DATE}}.

## Objective
Identify the most promising investment opportunities across global equity markets using institutional-grade analysis frameworks.

## Analysis Framework
1. Market regime assessment: macro environment, sector rotation, risk appetite.
2. Quantitative screening: valuation, growth, quality, momentum and sentiment filters.
3. Fundamental deep dive on the top 5 candidates: business, financials, catalysts, risks, valuation.
4. Portfolio construction: diversification, position sizing, entry points, time horizon.

## Output Format
1. Executive summary (top 3 picks with one-line thesis)
2. Market overview
3. Individual stock profiles ranked by conviction
4. Risk matrix
5. Screening methodology appendix"""

SINGLE_STOCK_TEMPLATE = """Prepare an in-depth equity research report on {{TICKER}} as of {{DATE}}.

Cover the business model and competitive position, recent financial performance,
balance sheet health, upcoming catalysts, key risks and a valuation with bull,
base and bear cases. Finish with a clear rating and price target rationale."""

COMPARISON_TEMPLATE = """Compare the following stocks as of {{DATE}}: {{STOCKS}}.

For each, summarise the investment thesis, growth outlook, profitability,
valuation and principal risks. Rank them by risk-adjusted upside and explain
the ranking."""

BUILT_IN_PROMPTS = [
    {
        "name": "Senior Equity Research Screen",
        "description": "Institutional-grade stock screening and discovery analysis.",
        "type": "discovery",
        "template": EQUITY_SCREEN_TEMPLATE,
    },
    {
        "name": "Single Stock Deep Dive",
        "description": "Full research report on one stock.",
        "type": "single-stock",
        "template": SINGLE_STOCK_TEMPLATE,
    },
    {
        "name": "Watchlist Comparison",
        "description": "Side-by-side comparison of several stocks.",
        "type": "multi-stock",
        "template": COMPARISON_TEMPLATE,
    },
]

SAMPLE_STOCKS = [
    {"ticker": "AAPL", "exchange": "NASDAQ", "company_name": "Apple Inc.", "sector": "Technology", "tags": ["mega-cap", "tech"]},
    {"ticker": "MSFT", "exchange": "NASDAQ", "company_name": "Microsoft Corporation", "sector": "Technology", "tags": ["mega-cap", "tech"]},
    {"ticker": "JPM", "exchange": "NYSE", "company_name": "JPMorgan Chase & Co.", "sector": "Financials", "tags": ["mega-cap", "banks"]},
    {"ticker": "SHOP.TO", "exchange": "TSX", "company_name": "Shopify Inc.", "sector": "Technology", "tags": ["tech", "canada"]},
]


def seed_prompts(session) -> tuple[int, int]:
    """Create or sync built-in prompts by name. Returns (created, updated)."""
    created = updated = 0
    for data in BUILT_IN_PROMPTS:
        existing = session.query(Prompt).filter_by(name=data["name"], is_built_in=True).first()
        if not existing:
            session.add(Prompt(is_built_in=True, default_provider="openai", **data))
            created += 1
            print(f"  ✓ Registered: {data['name']} ({data['type']})")
            continue
        changed = False
        for field in ("description", "type", "template"):
            if getattr(existing, field) != data[field]:
                setattr(existing, field, data[field])
                changed = True
        if changed:
            updated += 1
            print(f"  ↻ Synced: {data['name']}")
        else:
            print(f"  → Unchanged: {data['name']}")
    return created, updated


def seed_stocks(session) -> int:
    created = 0
    for data in SAMPLE_STOCKS:
        if session.query(Stock).filter_by(ticker=data["ticker"]).first():
            continue
        session.add(Stock(**data))
        created += 1
        print(f"  ✓ Added: {data['ticker']}")
    return created


def backfill_cost_logs(session) -> tuple[int, int]:
    """Insert missing cost log rows for completed jobs that carry a cost."""
    inserted = skipped = 0
    completed = session.query(ResearchJob).filter(ResearchJob.status == "completed").all()
    for job in completed:
        if job.cost_usd is None:
            skipped += 1
            continue
        if session.query(CostLog).filter(CostLog.job_id == job.id).first():
            skipped += 1
            continue
        session.add(CostLog(
            job_id=job.id,
            provider=job.provider,
            cost_usd=job.cost_usd,
            timestamp=job.completed_at or job.created_at,
        ))
        inserted += 1
    return inserted, skipped


def main(argv=None):
    parser = argparse.ArgumentParser(description="Initialize the research engine database.")
    parser.add_argument("--sample-stocks", action="store_true", help="Add a small sample watchlist.")
    parser.add_argument("--backfill-cost-logs", action="store_true",
                        help="Create missing cost log rows for completed jobs.")
    args = parser.parse_args(argv)

    print("=" * 60)
    print("  Kenkyu - Seed Script")
    print("=" * 60)

    print("\n[1/3] Initializing database...")
    init_db()
    print("  ✓ Tables created")

    session = SessionLocal()
    try:
        print("\n[2/3] Registering built-in prompts...")
        created, updated = seed_prompts(session)
        print(f"  ✓ Prompts synced (created={created}, updated={updated})")

        print("\n[3/3] Optional data...")
        if args.sample_stocks:
            print(f"  ✓ Sample stocks added: {seed_stocks(session)}")
        if args.backfill_cost_logs:
            inserted, skipped = backfill_cost_logs(session)
            print(f"  ✓ Cost logs backfilled (inserted={inserted}, skipped={skipped})")
        if not (args.sample_stocks or args.backfill_cost_logs):
            print("  → Nothing requested")
        session.commit()
    finally:
        session.close()

    print("\n" + "=" * 60)
    print("  ✓ Seed complete! Start the server with:")
    print("    python -m kenkyu")
    print("=" * 60)


if __name__ == "__main__":
    main()
