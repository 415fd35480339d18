from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=os.getenv("DASHSYNC_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("DASHSYNC_HOST", "127.0.0.1")
    port = int(os.getenv("DASHSYNC_PORT", "8080"))
    uvicorn.run("dashsync.web_admin:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
