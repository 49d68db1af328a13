"""Test configuration."""
import os
from collections.abc import AsyncIterator, Callable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

import pytest
from alembic import command
from alembic.config import Config
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.orm import Session

# --- Default test environment, set before the app reads its settings
os.environ.setdefault("DATABASE_URL", "sqlite:///./freelance_escrow_test.db")
os.environ.setdefault("ESCROW_ENV", "test")
os.environ.setdefault("DEV_API_KEY", "test-secret-key")
os.environ.setdefault("SECRET_KEY", "test-hmac-secret")
os.environ.setdefault("PAYMENT_GATEWAY", "sandbox")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")

from freelance_escrow.main import app  # noqa: E402
from freelance_escrow import db as db_module  # noqa: E402
from freelance_escrow.core.actors import Actor, ActorRole  # noqa: E402
from freelance_escrow.db import get_db  # noqa: E402
from freelance_escrow.models import Base, Escrow, Milestone, MilestoneStatus, User, Workspace  # noqa: E402
from freelance_escrow.models.api_key import ApiKey, ApiScope  # noqa: E402
from freelance_escrow.services import state_machine  # noqa: E402
from freelance_escrow.services.gateway import SandboxGateway, get_payment_gateway  # noqa: E402
from freelance_escrow.utils.apikey import hash_key  # noqa: E402
from freelance_escrow.utils.time import utcnow  # noqa: E402

DB_PATH = Path("./freelance_escrow_test.db")


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    cfg.attributes["sqlalchemy.url"] = os.environ["DATABASE_URL"]
    command.upgrade(cfg, "head")


# --- (1) Fresh database file per session, schema built by Alembic only
db_module.close_engine()
if DB_PATH.exists():
    DB_PATH.unlink()
_run_migrations()


def _wipe_tables() -> None:
    with db_module.get_engine().begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def db_session() -> Iterator[Session]:
    session = db_module.get_sessionmaker()()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        _wipe_tables()


@pytest.fixture(autouse=True)
def override_db_dependency(db_session: Session) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    yield
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def gateway() -> SandboxGateway:
    return SandboxGateway(secret="test-gateway-secret")


@pytest.fixture(autouse=True)
def override_gateway_dependency(gateway: SandboxGateway) -> Iterator[None]:
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield
    app.dependency_overrides.pop(get_payment_gateway, None)


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def make_user(db_session: Session) -> Callable[..., User]:
    def _factory(username: str = "user", *, stripe_account_id: str | None = None) -> User:
        suffix = uuid4().hex[:8]
        user = User(
            username=f"{username}-{suffix}",
            email=f"{username}-{suffix}@example.com",
            stripe_account_id=stripe_account_id,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _factory


@pytest.fixture
def make_api_key(db_session: Session) -> Callable[..., str]:
    """Create a key row and return the raw token for the Authorization header."""

    def _factory(scope: ApiScope = ApiScope.client, *, user: User | None = None, is_active: bool = True) -> str:
        token = f"{scope.value}-{uuid4().hex}"
        db_session.add(
            ApiKey(
                name=f"{scope.value}-{uuid4().hex}",
                prefix="test_" + scope.value,
                key_hash=hash_key(token),
                scope=scope,
                is_active=is_active,
                user_id=user.id if user is not None else None,
            )
        )
        db_session.commit()
        return token

    return _factory


@pytest.fixture
def admin_headers(make_api_key: Callable[..., str]) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_api_key(ApiScope.admin)}"}


@dataclass
class Engagement:
    workspace: Workspace
    client: User
    freelancer: User

    @property
    def client_actor(self) -> Actor:
        return Actor(role=ActorRole.CLIENT, user_id=self.client.id)

    @property
    def freelancer_actor(self) -> Actor:
        return Actor(role=ActorRole.FREELANCER, user_id=self.freelancer.id)


@pytest.fixture
def make_engagement(db_session: Session, make_user: Callable[..., User]) -> Callable[..., Engagement]:
    def _factory(*, project_budget: Decimal | None = Decimal("10000"), currency: str = "INR") -> Engagement:
        client_user = make_user("client")
        freelancer = make_user("freelancer", stripe_account_id="acct_test_freelancer")
        workspace = Workspace(
            title="Landing page",
            client_id=client_user.id,
            freelancer_id=freelancer.id,
            project_budget=project_budget,
            currency=currency,
        )
        db_session.add(workspace)
        db_session.commit()
        return Engagement(workspace=workspace, client=client_user, freelancer=freelancer)

    return _factory


@pytest.fixture
def make_milestone(db_session: Session) -> Callable[..., Milestone]:
    def _factory(
        engagement: Engagement,
        *,
        amount: Decimal = Decimal("1000.00"),
        status: MilestoneStatus = MilestoneStatus.PENDING,
        payment_due_date: datetime | None = None,
    ) -> Milestone:
        position = (
            db_session.scalar(
                select(func.count()).select_from(Milestone).where(Milestone.workspace_id == engagement.workspace.id)
            )
            + 1
        )
        milestone = Milestone(
            workspace_id=engagement.workspace.id,
            position=position,
            title=f"Milestone {position}",
            amount=amount,
            currency=engagement.workspace.currency,
            due_date=utcnow() + timedelta(days=14),
            payment_due_date=payment_due_date,
            status=status,
            attachment_refs=[],
        )
        db_session.add(milestone)
        db_session.commit()
        return milestone

    return _factory


@pytest.fixture
def fund_milestone(db_session: Session, gateway: SandboxGateway) -> Callable[..., Escrow]:
    """Open an order for the milestone and confirm it with a valid gateway signature."""

    def _fund(engagement: Engagement, milestone: Milestone) -> Escrow:
        escrow, order = state_machine.create_escrow_order(
            db_session, milestone.id, actor=engagement.client_actor, gateway=gateway
        )
        proof = state_machine.PaymentProof(order_id=order.order_id, provider_signature=gateway.sign(order.order_id))
        return state_machine.fund_escrow(db_session, milestone.id, proof, actor=engagement.client_actor, gateway=gateway)

    return _fund


@pytest.fixture
def submitted_escrow(
    db_session: Session,
    make_engagement: Callable[..., Engagement],
    make_milestone: Callable[..., Milestone],
    fund_milestone: Callable[..., Escrow],
) -> Callable[..., tuple[Engagement, Milestone, Escrow]]:
    """Funded escrow whose deliverable has been handed in for review."""

    def _factory(**milestone_kwargs) -> tuple[Engagement, Milestone, Escrow]:
        engagement = make_engagement()
        milestone = make_milestone(engagement, **milestone_kwargs)
        escrow = fund_milestone(engagement, milestone)
        state_machine.start_milestone(db_session, milestone.id, actor=engagement.freelancer_actor)
        state_machine.submit_deliverable(
            db_session,
            milestone.id,
            notes="First cut",
            attachment_refs=["blob://deliverables/v1.zip"],
            actor=engagement.freelancer_actor,
        )
        db_session.refresh(escrow)
        return engagement, milestone, escrow

    return _factory


@pytest.fixture
def approved_escrow(
    db_session: Session,
    submitted_escrow: Callable[..., tuple[Engagement, Milestone, Escrow]],
) -> Callable[..., tuple[Engagement, Milestone, Escrow]]:
    def _factory(**milestone_kwargs) -> tuple[Engagement, Milestone, Escrow]:
        engagement, milestone, escrow = submitted_escrow(**milestone_kwargs)
        state_machine.review_milestone(
            db_session, milestone.id, approve=True, notes="Looks good", actor=engagement.client_actor
        )
        db_session.refresh(escrow)
        return engagement, milestone, escrow

    return _factory
