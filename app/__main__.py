"""Run the workflow API with uvicorn (requires the ``server`` extra)."""

from .config import get_settings


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("app.main:app", host=settings.api_host, port=settings.api_port, log_level="info")


if __name__ == "__main__":
    main()
