"""Service entry point."""

import logging

import uvicorn

from ytflow.config import get_settings


def run() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("ytflow.api.app:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
