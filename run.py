#  HDR Backend - Entry Point
#
#  Launches the FastAPI server via uvicorn.
#
#  Depends on: hdr_backend/app.py, hdr_backend/config.py, hdr_backend/logging_config.py
#  Used by:    (run directly)

import uvicorn

from hdr_backend.config import HOST, LOG_FORMAT, LOG_LEVEL, PORT, cfg
from hdr_backend.logging_config import setup_logging


def main():
    setup_logging(level=LOG_LEVEL, fmt=LOG_FORMAT)

    uvicorn.run(
        "hdr_backend.app:app",
        host=HOST,
        port=PORT,
        reload=cfg("server.reload", False),
    )


if __name__ == "__main__":
    main()
