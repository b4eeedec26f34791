"""Entry point for running the research engine API."""
import os

import uvicorn

if __name__ == "__main__":
    from kenkyu.app import app
    uvicorn.run(
        app,
        host=os.environ.get("KENKYU_HOST", "0.0.0.0"),
        port=int(os.environ.get("KENKYU_PORT", "8001")),
    )
