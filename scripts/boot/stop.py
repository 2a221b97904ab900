#!/usr/bin/env python3
import contextlib
import os
from pathlib import Path

import psutil

from utils import API_PID_FILE, REPO_ROOT, logger


def stop_by_pid_file(path: Path) -> bool:
    """pidファイルのプロセスを止める。止めたら True."""
    if not path.exists():
        logger.info("pidファイルがありません: %s", path.name)
        return False
    stopped = False
    try:
        pid = int(path.read_text(encoding="ascii").strip())
        proc = psutil.Process(pid)
        proc.terminate()
        stopped = True
    except ValueError:
        logger.info("pidファイルが壊れています")
    except psutil.NoSuchProcess:
        logger.info("すでに停止済みです")
    with contextlib.suppress(OSError):
        path.unlink(missing_ok=True)
    return stopped


def main() -> int:
    os.chdir(REPO_ROOT)

    logger.info("============== Back2Tab 停止中 ================")

    stop_by_pid_file(API_PID_FILE)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
