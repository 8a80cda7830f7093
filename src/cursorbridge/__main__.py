"""Run the bridge with uvicorn."""

import uvicorn

from .api import create_app
from .config import configure_logging, load_config


def main():
    settings = load_config()
    configure_logging(settings)
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, access_log=False)


if __name__ == "__main__":
    main()
