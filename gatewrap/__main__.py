"""
Entry point for running the wrapper via `python -m gatewrap`.

Starts the FastAPI server with uvicorn.
"""

import uvicorn

from .config import config
from .main import configure_logging


def main():
    """Run the wrapper server."""
    configure_logging(config)
    uvicorn.run(
        "gatewrap.main:create_app",
        factory=True,
        host=config.host,
        port=config.port,
        reload=False,
        log_config=None,
    )


if __name__ == "__main__":
    main()
