import uvicorn

from api.app import create_app
from utils.config import Settings
from utils.logger import get_logger

_logger = get_logger("ramikart")


def main() -> None:
    settings = Settings.from_env()
    _logger.info(f"Starting RamiKart API on {settings.host}:{settings.port}")
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
