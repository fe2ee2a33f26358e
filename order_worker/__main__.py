import uvicorn

from order_worker.core.config import settings
from order_worker.core.logging import setup_logging


def main() -> None:
    setup_logging(settings.log_level)
    uvicorn.run("order_worker.main:app", host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
