"""Entry point: Back2Tab サービスを起動する.

Usage:
    python -m back2tab
    uvicorn back2tab.api.main:app --host 127.0.0.1 --port 5577 --reload
"""

import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5577


def main() -> None:
    load_dotenv(dotenv_path=Path.cwd() / ".env.local", override=True)

    # .env.local を読んだ後で import し、環境変数をロガーと設定に反映させる
    from back2tab.api.services.oracle import create_oracle
    from back2tab.api.services.storage import (
        CredentialStore,
        JsonFileStorage,
        default_data_dir,
    )
    from back2tab.logger import logger

    storage = JsonFileStorage(default_data_dir() / "storage.json")
    oracle = create_oracle(CredentialStore(storage))
    logger.info("Gemini available: %s", oracle.is_available())

    uvicorn.run(
        "back2tab.api.main:app",
        host=os.getenv("BACK2TAB_HOST", DEFAULT_HOST),
        port=int(os.getenv("BACK2TAB_PORT", str(DEFAULT_PORT))),
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    main()
