"""
Bank import administration from a source checkout.

Same commands as the installed ``bankfeed-admin`` entry point:

    python scripts/bank_admin.py diagnose --user 1
    python scripts/bank_admin.py convert --dry-run
    python scripts/bank_admin.py reimport --user 1 --limit 5
"""
import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app.modules.banking.admin import main


if __name__ == "__main__":
    sys.exit(main())
