from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=os.getenv("AGENDASYNC_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("AGENDASYNC_HOST", "0.0.0.0")  # nosec B104
    port = int(os.getenv("AGENDASYNC_PORT", "8080"))
    uvicorn.run("agendasync.web_admin:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
