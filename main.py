"""Protagonist: dev launcher. Starts the API server in watch mode."""

import argparse
import os
import subprocess
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = os.getenv("PORT", "13013")


def main():
    parser = argparse.ArgumentParser(description="Protagonist dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--no-reload", action="store_true",
                        help="Disable auto-reload on source changes")
    parser.add_argument("--echo", action="store_true",
                        help="Use the offline echo provider instead of the HTTP backend")
    args = parser.parse_args()

    # Build env for the server process so it picks up the same data dir
    env = os.environ.copy()
    if args.data_dir:
        env["DATA_DIR"] = str(args.data_dir.resolve())
    if args.echo:
        env["PROTAGONIST_PROVIDER"] = "echo"

    cmd = [sys.executable, "-m", "uvicorn", "protagonist.app:app", "--host", HOST, "--port", PORT]
    if not args.no_reload:
        cmd.append("--reload")

    print(f"Starting API on http://localhost:{PORT} ...")
    try:
        sys.exit(subprocess.call(cmd, cwd=ROOT, env=env))
    except KeyboardInterrupt:
        print("\nShutting down...")


if __name__ == "__main__":
    main()
