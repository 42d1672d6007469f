"""Allow ``python -m deck_courier`` to launch the service."""

from __future__ import annotations

from deck_courier.app.main import run


if __name__ == "__main__":
    raise SystemExit(run())
