#!/usr/bin/env python3
"""
Rewrite every role's permissions into the canonical grant shape.

Older rows may hold plain strings, camelCase objects or character-indexed
objects. Run once after upgrading; reads never convert on the fly.

Usage:
    python scripts/normalize_role_permissions.py [--dry-run]
"""
import sys
import os
import argparse

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from orghub.db import SessionLocal
from orghub.models.models import Role
from orghub.services.permissions import normalize_permission_entries


def normalize_roles(dry_run: bool = False) -> int:
    """Returns the number of roles whose stored permissions changed."""
    db = SessionLocal()
    changed = 0
    try:
        for role in db.query(Role).order_by(Role.name).all():
            before = role.permissions or []
            after = normalize_permission_entries(before)
            if after == before:
                continue
            changed += 1
            print(f"{role.name}: {len(before)} entries -> {len(after)} canonical grants")
            if not dry_run:
                role.permissions = after
        if dry_run:
            db.rollback()
            print(f"[dry-run] {changed} role(s) would be rewritten")
        else:
            db.commit()
            print(f"Rewrote {changed} role(s)")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    return changed


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Normalize stored role permissions")
    parser.add_argument("--dry-run", action="store_true", help="Report changes without writing")
    args = parser.parse_args()
    normalize_roles(dry_run=args.dry_run)
