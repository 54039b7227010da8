# src/creatorsetup/api/__main__.py
from __future__ import annotations

import uvicorn

from creatorsetup.env import load_dotenv_if_present


def main() -> None:
    # Load .env early so CREATORSETUP_* vars exist before anything reads them.
    load_dotenv_if_present()

    from creatorsetup.api.app import create_app
    from creatorsetup.config import api_bind

    host, port = api_bind()
    uvicorn.run(create_app(), host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
