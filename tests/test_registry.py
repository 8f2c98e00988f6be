"""Session registry and session classification."""

from app.whatsapp.registry import (
    ConnectionStatus,
    Identity,
    SessionClass,
    SessionRecord,
    SessionRegistry,
    classify_session,
    is_tenant_session,
)

TENANT = "123e4567-e89b-12d3-a456-426614174000"


def _record(session_id: str, epoch: int = 1, status: ConnectionStatus = ConnectionStatus.CONNECTING) -> SessionRecord:
    return SessionRecord(session_id=session_id, session_class=classify_session(session_id), epoch=epoch, status=status)


class TestClassification:
    def test_tenant_uuid_is_bot_class(self) -> None:
        assert is_tenant_session(TENANT)
        assert is_tenant_session(TENANT.upper())
        assert classify_session(TENANT) == SessionClass.BOT

    def test_ai_bot_prefix_is_bot_class(self) -> None:
        assert classify_session("wa-bot-ai") == SessionClass.BOT
        assert classify_session("wa-bot-ai-2") == SessionClass.BOT

    def test_everything_else_is_general(self) -> None:
        assert classify_session("main-session") == SessionClass.GENERAL
        assert classify_session("CS-BOT") == SessionClass.GENERAL
        assert classify_session("") == SessionClass.GENERAL
        assert not is_tenant_session(TENANT + "-x")


class TestRegistry:
    def test_set_get_delete(self) -> None:
        registry = SessionRegistry()
        registry.set("a", _record("a"))
        assert registry.get("a").session_id == "a"
        registry.delete("a")
        registry.delete("a")
        assert registry.get("a") is None
        assert registry.count() == 0

    def test_is_current_tracks_latest_epoch(self) -> None:
        registry = SessionRegistry()
        registry.set("a", _record("a", epoch=1))
        assert registry.is_current("a", 1)
        registry.set("a", _record("a", epoch=2))
        assert not registry.is_current("a", 1)
        assert registry.is_current("a", 2)
        assert not registry.is_current("missing", 1)

    def test_list_exposes_identity(self) -> None:
        registry = SessionRegistry()
        record = _record("a", status=ConnectionStatus.OPEN)
        record.identity = Identity(jid="6281234567890:3@s.whatsapp.net", name="Shop")
        registry.set("a", record)
        registry.set("b", _record("b"))

        listed = {item["id"]: item for item in registry.list()}
        assert listed["a"]["status"] == "open"
        assert listed["a"]["phone"] == "6281234567890"
        assert listed["a"]["identity"]["name"] == "Shop"
        assert listed["b"]["phone"] is None

    def test_status_counts(self) -> None:
        registry = SessionRegistry()
        registry.set("a", _record("a", status=ConnectionStatus.OPEN))
        registry.set("b", _record("b", status=ConnectionStatus.OPEN))
        registry.set("c", _record("c", status=ConnectionStatus.CLOSE))
        assert registry.status_counts() == {"open": 2, "close": 1}

    def test_for_each_tolerates_mutation(self) -> None:
        registry = SessionRegistry()
        for sid in ("a", "b", "c"):
            registry.set(sid, _record(sid))
        seen = []

        def visit(record: SessionRecord) -> None:
            seen.append(record.session_id)
            registry.delete(record.session_id)

        registry.for_each(visit)
        assert sorted(seen) == ["a", "b", "c"]
        assert len(registry) == 0
