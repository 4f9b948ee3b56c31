import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


_IST_ENV_VARS = (
    "IST_STORAGE_MODE",
    "IST_EVENTS_PATH",
    "IST_DB_PATH",
    "DB_PATH",
    "IST_DB_MAX_CONNECTIONS",
    "IST_CLASSIFIER",
    "GPT4ALL_URL",
    "MODEL_ID",
    "IST_CLASSIFIER_TIMEOUT",
    "IST_MODEL_VERSION",
    "IST_API_TOKENS",
    "IST_REPORT_MAX_SKILLS",
    "IST_REPORT_GAP_THRESHOLD",
)


@pytest.fixture
def ist_env(monkeypatch, tmp_path):
    """Point every IST setting at ``tmp_path`` and reset the process-wide singletons."""
    import repositories

    for var in _IST_ENV_VARS:
        # setenv first so values written later by validate_environment() are undone too
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)
    monkeypatch.setenv("IST_EVENTS_PATH", str(tmp_path / "ist_events.json"))
    monkeypatch.setenv("IST_DB_PATH", str(tmp_path / "ist.db"))
    monkeypatch.setenv("IST_CLASSIFIER", "static")

    repositories.reset_ist_event_repository()
    repositories.reset_chat_history_repository()
    yield tmp_path
    repositories.reset_ist_event_repository()
    repositories.reset_chat_history_repository()


@pytest.fixture
def json_store(tmp_path):
    from repositories.json_store import JsonIstEventRepository

    return JsonIstEventRepository(tmp_path / "ist_events.json")


@pytest.fixture
def sqlite_store(tmp_path):
    from repositories.sqlite_store import SqliteIstEventRepository

    store = SqliteIstEventRepository(str(tmp_path / "ist.db"), max_connections=4)
    yield store
    store.close()


@pytest.fixture(params=["local", "relational"])
def event_store(request, json_store, sqlite_store):
    """Run a test once against every storage backend."""
    if request.param == "local":
        return json_store
    return sqlite_store
