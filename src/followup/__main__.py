"""Entry point for running follow-up triage as a module.

Usage:
    python -m followup validate-config
    python -m followup --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from followup.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
