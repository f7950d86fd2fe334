#!/usr/bin/env python3
"""
Seed a minimal directory: one branch, the admin role, a few ranked roles and an
admin login. Safe to run more than once.

Usage:
    python scripts/seed_directory.py [--admin-username admin] [--admin-password ...]
"""
import sys
import os
import argparse

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from orghub.auth.security import get_password_hash
from orghub.config import settings
from orghub.db import Base, SessionLocal, engine
from orghub.models.models import Branch, Role, User, UserLogin
from orghub.services.permissions import make_grant


# name, rank (lower = more senior)
DEFAULT_ROLES = [
    (settings.admin_role_name, 1),
    ("principal", 10),
    ("manager", 20),
    ("teacher", 50),
    ("staff", 80),
]


def seed(admin_username: str, admin_password: str) -> None:
    if settings.database_url.startswith("sqlite:///./"):
        os.makedirs("var", exist_ok=True)
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        branch = db.query(Branch).filter(Branch.code == "HQ").first()
        if not branch:
            branch = Branch(name="Head Office", code="HQ")
            db.add(branch)
            db.flush()
            print("Created branch Head Office")

        roles = {}
        for name, rank in DEFAULT_ROLES:
            role = db.query(Role).filter(Role.name == name, Role.enterprise_id.is_(None)).first()
            if not role:
                grants = [make_grant(a) for a in settings.permission_catalog] if rank <= 10 else []
                role = Role(name=name, description=name.title(), rank=rank, permissions=grants)
                db.add(role)
                db.flush()
                print(f"Created role {name} (rank {rank})")
            roles[name] = role

        username = admin_username.strip().lower()
        if not db.query(UserLogin).filter(UserLogin.username == username).first():
            admin = User(
                external_id="ADMIN-001",
                full_name="System Administrator",
                username=username,
                role_id=roles[settings.admin_role_name].id,
                branch_id=branch.id,
                can_login=True,
            )
            admin.login = UserLogin(
                username=username,
                password_hash=get_password_hash(admin_password),
                max_allowed_devices=settings.max_allowed_devices,
            )
            db.add(admin)
            print(f"Created admin login '{username}'")
        db.commit()
        print("Done.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed branches, roles and an admin login")
    parser.add_argument("--admin-username", default=os.getenv("ADMIN_USERNAME", "admin"))
    parser.add_argument("--admin-password", default=os.getenv("ADMIN_PASSWORD", "ChangeMe123!"))
    args = parser.parse_args()
    seed(args.admin_username, args.admin_password)
