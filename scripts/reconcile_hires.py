#!/usr/bin/env python3
"""
Hire Reconciliation Script

Finds hires that were only partially applied (a contract whose project is
still open or whose proposals were never settled, or an accepted proposal
with no contract) and repairs them forward.

Usage:
    python3 scripts/reconcile_hires.py            # repair
    python3 scripts/reconcile_hires.py --dry-run  # report only
"""

import argparse
import os
import sys

from dotenv import load_dotenv

# Colors for terminal output
GREEN = '\033[92m'
RED = '\033[91m'
YELLOW = '\033[93m'
BLUE = '\033[94m'
RESET = '\033[0m'


def print_header(text):
    print(f"\n{BLUE}{'='*60}{RESET}")
    print(f"{BLUE}{text.center(60)}{RESET}")
    print(f"{BLUE}{'='*60}{RESET}\n")


def print_success(text):
    print(f"{GREEN}✅ {text}{RESET}")


def print_error(text):
    print(f"{RED}❌ {text}{RESET}")


def print_warning(text):
    print(f"{YELLOW}⚠️  {text}{RESET}")


def main():
    parser = argparse.ArgumentParser(description='Repair partially applied hires')
    parser.add_argument('--dry-run', action='store_true', help='Report repairs without writing them')
    parser.add_argument('--project-id', type=int, default=None, help='Only check one project')
    args = parser.parse_args()

    load_dotenv()
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

    from app import app, hire_service
    from workflow_errors import StoreError

    print_header("Hire Reconciliation" + (" (dry run)" if args.dry_run else ""))

    with app.app_context():
        try:
            repairs = hire_service.reconcile(project_id=args.project_id, dry_run=args.dry_run)
        except StoreError as e:
            print_error(f"Reconciliation failed at step {e.step}: {e.message}")
            return 1

    if not repairs:
        print_success("All hires are consistent")
        return 0

    for repair in repairs:
        line = (f"{repair['action']}: project={repair['project_id']} "
                f"contract={repair['contract_id']} proposal={repair['proposal_id']}")
        if args.dry_run:
            print_warning(f"WOULD {line}")
        else:
            print_success(line)

    print(f"\n{len(repairs)} repair(s) {'found' if args.dry_run else 'applied'}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
