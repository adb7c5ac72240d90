"""
Launch script for the Velox panel.

Checks dependencies and storage, starts the web server and opens the
browser.

Usage:
    python run.py
"""
import os
import subprocess
import sys
import threading
import time
import urllib.error
import urllib.request
import webbrowser
from pathlib import Path

PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
APP_URL = f"http://localhost:{os.environ.get('VELOX_PORT', '8000')}"


def _print(msg: str) -> None:
    print(f"[run] {msg}")


def check_python_deps() -> bool:
    """Check that required Python packages are installed."""
    missing = []
    for pkg in ["fastapi", "uvicorn", "starlette", "sse_starlette", "itsdangerous", "sqlalchemy"]:
        try:
            __import__(pkg)
        except ImportError:
            missing.append(pkg)

    if missing:
        _print(f"Missing Python packages: {', '.join(missing)}")
        _print("Install with: pip install -e .[dev]")
        return False
    return True


def check_storage() -> bool:
    """Report the storage mode; returns False when shared mode is on but unreachable."""
    from src.shared.errors import BackendUnavailable
    from src.storage.backends import Backends

    data_root = Path(os.environ.get("VELOX_DATA_ROOT", os.path.join(PROJECT_ROOT, "data")))
    backends = Backends(data_root)
    mode = backends.resolve_mode()
    _print(f"Storage mode: {mode.value} (data root {data_root})")

    store = backends.shared_store()
    if store is None:
        return True
    try:
        store.execute("SELECT version FROM sync_state WHERE id = 1")
    except BackendUnavailable as e:
        _print(f"WARNING: {e}")
        return False
    _print("Shared database is reachable.")
    return True


def open_browser() -> None:
    """Wait for the web server to be ready, then open the browser."""
    for _ in range(30):
        try:
            req = urllib.request.Request(APP_URL, method="GET")
            with urllib.request.urlopen(req, timeout=2) as resp:
                if resp.status == 200:
                    _print(f"Opening browser at {APP_URL}")
                    webbrowser.open(APP_URL)
                    return
        except (urllib.error.URLError, ConnectionError, OSError):
            pass
        time.sleep(1)
    _print("WARNING: Could not verify server is running. Open manually: " + APP_URL)
    webbrowser.open(APP_URL)


def launch_app() -> None:
    """Launch the FastAPI web application via uvicorn."""
    _print(f"Launching Velox panel at {APP_URL} ...")

    # Open browser in a background thread (waits for server to start)
    threading.Thread(target=open_browser, daemon=True).start()

    subprocess.run(
        [sys.executable, "-m", "src"],
        cwd=PROJECT_ROOT,
    )


def main() -> int:
    _print("=" * 50)
    _print("Velox Panel - Launcher")
    _print("=" * 50)

    _print("Checking Python dependencies...")
    if not check_python_deps():
        return 1
    _print("Python dependencies OK.")

    _print("Checking storage...")
    if not check_storage():
        _print("Continuing: reads will be served from the local mirror, writes will fail.")

    launch_app()
    return 0


if __name__ == "__main__":
    sys.exit(main())
