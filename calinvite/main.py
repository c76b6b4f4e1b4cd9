from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=os.getenv("CALINVITE_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("CALINVITE_HOST", "0.0.0.0")
    port = int(os.getenv("CALINVITE_PORT", "8080"))
    uvicorn.run("calinvite.web_admin:create_app", host=host, port=port, factory=True, reload=False)


if __name__ == "__main__":
    main()
