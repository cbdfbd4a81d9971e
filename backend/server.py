import logging

from specpilot.app import create_app


# Basic logger for server diagnostics (inherits uvicorn handlers)
logger = logging.getLogger("specpilot.server")
if not logger.handlers:
    logger.setLevel(logging.INFO)

logging.getLogger("specpilot").setLevel(logging.INFO)


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8081)
