from __future__ import annotations

import importlib.util
import sys


def _has_module(name: str) -> bool:
    return importlib.util.find_spec(name) is not None


def _check_deps() -> None:
    missing = [m for m in ("sqlalchemy", "httpx", "socketio", "pydantic") if not _has_module(m)]
    if not missing:
        return
    msg = f"""Missing dependencies ({", ".join(missing)}).

Install core deps:
  python -m venv .venv
  . .venv/bin/activate
  python -m pip install -U pip
  python -m pip install -e .

Audio playback for the OpenAI speech engine also needs:
  python -m pip install -e '.[audio]'
"""
    sys.stderr.write(msg)
    raise SystemExit(1)


if __name__ == "__main__":
    _check_deps()

    from scripts.run_classroom import main

    main()
