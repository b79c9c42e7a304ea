import logging

import uvicorn

from clinic_slots.config import load_settings


def main():
    """Run the FastAPI application with uvicorn server."""
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("clinic_slots.app:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
