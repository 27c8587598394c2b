"""Entry point for running the triage engine as a module.

Usage:
    python -m mailtriage validate-config
    python -m mailtriage --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from mailtriage.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
