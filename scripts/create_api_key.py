"""
Create a project (tenant) and an API key for it

Usage:
    python scripts/create_api_key.py <project-name> [--permissions events:write,analytics:read]

The plain key is printed once; only its SHA-256 hash is stored.
"""

import argparse
import sys

from sqlalchemy.orm import sessionmaker

from eventpulse.core.database import sync_engine
from eventpulse.models.base import Base
from eventpulse.models.tenant import ApiKey, Project
from eventpulse.services.tenants import generate_api_key, hash_api_key


def create_project_key(name: str, permissions: list[str]) -> tuple[str, str]:
    """Returns (project_id, plain api key)"""
    Base.metadata.create_all(sync_engine)
    Session = sessionmaker(bind=sync_engine)

    api_key = generate_api_key()
    with Session() as session:
        project = Project(name=name)
        session.add(project)
        session.flush()

        session.add(ApiKey(
            project_id=project.id,
            key_hash=hash_api_key(api_key),
            permissions=permissions
        ))
        session.commit()
        return str(project.id), api_key


def main():
    parser = argparse.ArgumentParser(description="Create a project and API key")
    parser.add_argument("name", help="Project name")
    parser.add_argument(
        "--permissions",
        default="events:write,analytics:read,ai:query",
        help="Comma-separated permission list"
    )
    args = parser.parse_args()

    if not args.name.strip():
        print("Error: project name cannot be empty")
        sys.exit(1)

    permissions = [p.strip() for p in args.permissions.split(",") if p.strip()]
    project_id, api_key = create_project_key(args.name.strip(), permissions)

    print("=" * 50)
    print(f"Project:  {args.name}")
    print(f"Tenant:   {project_id}")
    print(f"API key:  {api_key}")
    print("Store the key now; it cannot be shown again.")
    print("=" * 50)


if __name__ == "__main__":
    main()
