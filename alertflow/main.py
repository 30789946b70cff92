# alertflow/main.py
"""Process entry point: configure logging, build the runtime and serve the API."""

import logging

import uvicorn

from .api import create_app
from .config import configure_logging, get_settings
from .runtime import Runtime

logger = logging.getLogger("alertflow.main")


def main():
    settings = get_settings()
    configure_logging(settings)
    runtime = Runtime(settings)
    app = create_app(runtime, manage_lifecycle=True)
    logger.info(f"Starting alertflow | environment={settings.ENVIRONMENT} | port={settings.API_PORT}")
    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT, log_config=None)


if __name__ == "__main__":
    main()
