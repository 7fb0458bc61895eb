"""Command-line entrypoint: serve the gateway with uvicorn."""

import uvicorn

from wa_gateway.config import Settings


def main() -> None:
    """Run the ASGI app on the configured host and port."""
    settings = Settings()
    uvicorn.run(
        "wa_gateway.api.asgi:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
