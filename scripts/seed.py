"""Seed a client, a freelancer and a small workspace plan for local testing."""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

from freelance_escrow import models  # noqa: E402
from freelance_escrow.config import get_settings  # noqa: E402
from freelance_escrow.db import create_all, get_sessionmaker  # noqa: E402
from freelance_escrow.utils.time import utcnow  # noqa: E402


def main() -> None:
    settings = get_settings()
    print(f"Using database: {settings.database_url}")

    create_all()
    session = get_sessionmaker()()

    try:
        client = models.User(username="asha", email="asha@example.com", full_name="Asha Client")
        freelancer = models.User(username="ravi", email="ravi@example.com", full_name="Ravi Freelancer")
        session.add_all([client, freelancer])
        session.flush()

        workspace = models.Workspace(
            title="Marketing site redesign",
            client_id=client.id,
            freelancer_id=freelancer.id,
            project_budget=Decimal("18000"),
            currency="INR",
        )
        session.add(workspace)
        session.flush()

        now = utcnow()
        for position, (title, amount) in enumerate(
            [("Wireframes", "4000"), ("Visual design", "6000"), ("Build and launch", "8000")], start=1
        ):
            session.add(
                models.Milestone(
                    workspace_id=workspace.id,
                    position=position,
                    title=title,
                    amount=Decimal(amount),
                    currency="INR",
                    due_date=now + timedelta(weeks=2 * position),
                    payment_due_date=now + timedelta(weeks=2 * position, days=7),
                    status=models.MilestoneStatus.PENDING,
                    attachment_refs=[],
                )
            )
        session.commit()
        print(f"Seed data inserted: client={client.id} freelancer={freelancer.id} workspace={workspace.id}")
    finally:
        session.close()


if __name__ == "__main__":
    main()
