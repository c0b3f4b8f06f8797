import pytest

from cohost.config import Settings
from cohost.schemas.context import BookingSummary
from cohost.services.context_service import InMemoryContextRepository
from cohost.services.ingestion_service import InMemoryEventLedger
from cohost.services.orchestrator_service import build_engine
from fakes import FakeAdapter, FakeBackend, FakeClock, RecordingNotifier, beach_house


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository():
    repo = InMemoryContextRepository()
    repo.add_property(beach_house())
    repo.add_booking(
        "conv-1",
        BookingSummary(booking_id="bk-1", guest_name="Maria", door_code="4821"),
    )
    return repo


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite:///:memory:",
        generation_backoff_seconds=0.0,
        dispatch_backoff_seconds=0.0,
        dispatch_backoff_max_seconds=0.0,
        context_timeout_seconds=1.0,
        sentiment_scorer="lexicon",
        brand_voice_path=None,
        templates_path=None,
    )


@pytest.fixture
def make_engine(test_settings, repository):
    """Build a wired engine whose external collaborators are fakes."""

    def _make(backend=None, adapter=None, notifier=None, settings=None):
        backend = backend or FakeBackend()
        adapter = adapter or FakeAdapter()
        notifier = notifier or RecordingNotifier()
        engine = build_engine(
            settings or test_settings,
            repository=repository,
            ledger=InMemoryEventLedger(),
            backend=backend,
            adapters={"airbnb": adapter},
            notifier=notifier,
        )
        engine.fakes = {"backend": backend, "adapter": adapter, "notifier": notifier}
        return engine

    return _make
