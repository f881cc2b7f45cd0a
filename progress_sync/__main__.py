"""Run the service with uvicorn: ``python -m progress_sync``."""

import uvicorn

from . import config


def main() -> None:
    uvicorn.run(
        "progress_sync.main:app",
        host=config.HOST,
        port=config.PORT,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
