"""Run the daemon: `python -m app`."""

import uvicorn

from app.config import get_settings
from app.main import app


def main() -> None:
    settings = get_settings()
    # log_config=None keeps the JSON logging set up by app.main
    uvicorn.run(
        app,
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_config=None,
    )


if __name__ == "__main__":
    main()
