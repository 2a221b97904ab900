#!/usr/bin/env python3
import os
import subprocess
import sys
from pathlib import Path

from utils import (
    API_PID_FILE,
    LOG_DIR,
    REPO_ROOT,
    api_address,
    load_local_env,
    logger,
    run_command,
    wait_http,
)


def background_popen(
    cmd: list[str], stdout_path: Path, stderr_path: Path, env: dict[str, str]
) -> subprocess.Popen[bytes]:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    creationflags = subprocess.CREATE_NO_WINDOW if sys.platform == "win32" else 0
    with (
        stdout_path.open("ab", buffering=0) as stdout_f,
        stderr_path.open("ab", buffering=0) as stderr_f,
    ):
        return subprocess.Popen(  # noqa: S603
            cmd,
            cwd=str(REPO_ROOT),
            stdout=stdout_f,
            stderr=stderr_f,
            env=env,
            creationflags=creationflags,
        )


def start_api(env: dict[str, str]) -> None:
    host, port = api_address()
    proc = background_popen(
        [
            "uv",
            "run",
            "uvicorn",
            "back2tab.api.main:app",
            "--port",
            port,
            "--host",
            host,
        ],
        stdout_path=LOG_DIR / "api.log",
        stderr_path=LOG_DIR / "api.err.log",
        env=env,
    )
    API_PID_FILE.write_text(str(proc.pid), encoding="ascii")
    if wait_http(f"http://{host}:{port}/status"):
        logger.info(f"API Server: http://{host}:{port} が起動 (PID {proc.pid})")
    else:
        logger.warning("FastAPI が応答しません ./log/ 以下を見て")


def main() -> int:
    os.chdir(REPO_ROOT)

    logger.info("================ Back2Tab Starting up... ===============")

    load_local_env()
    if not os.environ.get("GEMINI_API_KEY"):
        logger.info("GEMINI_API_KEY 未設定: パネルから API キーを保存してください")

    child_env = os.environ.copy()

    run_command(["uv", "sync", "--extra", "test"])

    start_api(child_env)

    logger.info("\n============== Back2Tab is now running! =================\n")
    logger.info("\nLogs: ./log/api.log, ./log/back2tab.log")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
