"""
Shared fixtures: in-memory SQLite database, entity/event factories and
recording senders.
"""
import pytest
from datetime import date, datetime
from uuid import uuid4

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from compliance_engine.config import EngineConfig
from compliance_engine.database import Base
from compliance_engine.models.db_models import (
    BusinessEntityDB, ComplianceEventDB, ChannelPreferenceDB,
    EventStatus, EventPriority, IntervalUnit,
)
from compliance_engine.models.engine_models import ObligationTemplate, Recurrence
from compliance_engine.services.compliance.recurrence import cycle_key, recurrence_from_columns
from compliance_engine.services.compliance.rules_provider import MappingRulesProvider
from compliance_engine.services.compliance.senders import EmailSender, SmsSender, SenderError


# =============================================================================
# DATABASE
# =============================================================================

def make_sqlite_engine():
    """In-memory SQLite shared across threads, with working SAVEPOINTs."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def engine():
    engine = make_sqlite_engine()
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(engine):
    """
    Test-side session. Every session shares one SQLite connection, so this
    one must not hold a transaction open while the sweep or the API runs:
    factories commit, and objects stay readable after commit without a
    refresh query.
    """
    session = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """
    File-backed SQLite with one connection per session, for tests that need
    real concurrent writers. BEGIN IMMEDIATE takes the write lock up front;
    the busy timeout makes the other writers wait for it.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'engine.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def config():
    return EngineConfig(sweep_workers=1, retry_backoff_seconds=0)


# =============================================================================
# FACTORIES
# =============================================================================

ANNUAL_REPORT = ObligationTemplate(
    event_type="annual_report",
    title="Annual Report Filing",
    description="File annual report with the Secretary of State.",
    recurrence=Recurrence(IntervalUnit.YEAR, 1),
    anchor_offset_days=365,
    priority=EventPriority.HIGH,
    category="state_filing",
)


@pytest.fixture
def annual_report_rules():
    """Only the annual report, for LLCs in Delaware."""
    return MappingRulesProvider({("LLC", "DE"): [ANNUAL_REPORT]})


@pytest.fixture
def make_entity(db):
    def _make(
        owner_user_id="user-1",
        name="Acme LLC",
        entity_type="LLC",
        jurisdiction="DE",
        formation_date=date(2023, 1, 10),
        is_active=True,
    ):
        entity = BusinessEntityDB(
            id=str(uuid4()),
            owner_user_id=owner_user_id,
            name=name,
            entity_type=entity_type,
            jurisdiction=jurisdiction,
            formation_date=formation_date,
            is_active=is_active,
        )
        db.add(entity)
        db.commit()
        return entity
    return _make


@pytest.fixture
def make_event(db):
    def _make(
        entity,
        due_date,
        status=EventStatus.PENDING,
        priority=EventPriority.MEDIUM,
        event_type=None,
        recurrence_unit=IntervalUnit.YEAR,
        recurrence_count=1,
        title="Annual Report Filing",
    ):
        recurrence = recurrence_from_columns(recurrence_unit, recurrence_count)
        event_row = ComplianceEventDB(
            id=str(uuid4()),
            entity_id=entity.id,
            event_type=event_type or f"obligation_{uuid4().hex[:8]}",
            title=title,
            description="",
            due_date=due_date,
            recurrence_unit=recurrence_unit,
            recurrence_count=recurrence_count if recurrence_unit else None,
            cycle_key=cycle_key(due_date, recurrence),
            priority=priority,
            status=status,
            created_at=datetime(2023, 1, 1),
            updated_at=datetime(2023, 1, 1),
        )
        db.add(event_row)
        db.commit()
        return event_row
    return _make


@pytest.fixture
def set_preferences(db):
    def _set(user_id, email=False, sms=False, in_app=True, email_address=None, phone_number=None):
        db.merge(ChannelPreferenceDB(
            user_id=user_id,
            email_enabled=email,
            sms_enabled=sms,
            in_app_enabled=in_app,
            email_address=email_address,
            phone_number=phone_number,
        ))
        db.commit()
    return _set


# =============================================================================
# SENDERS
# =============================================================================

class RecordingEmailSender(EmailSender):
    """Collects sent mail; fails the first `fail_times` calls."""

    def __init__(self, fail_times=0):
        self.fail_times = fail_times
        self.calls = 0
        self.sent = []

    def send_email(self, to, subject, body):
        self.calls += 1
        if self.calls <= self.fail_times:
            raise SenderError("smtp unavailable")
        self.sent.append((to, subject, body))
        return True


class RecordingSmsSender(SmsSender):
    def __init__(self, fail_times=0):
        self.fail_times = fail_times
        self.calls = 0
        self.sent = []

    def send_sms(self, to, body):
        self.calls += 1
        if self.calls <= self.fail_times:
            raise SenderError("gateway 503")
        self.sent.append((to, body))
        return True


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def sms_sender():
    return RecordingSmsSender()
