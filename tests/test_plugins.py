import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import json

import httpx
import pytest
from botocore.exceptions import ClientError

from core.audit_constants import EVENT_PLUGIN_CONNECTED
from core.errors import BadRequest, ConfigurationError, NotFound, ValidationIssue
from core.models import AuditEvent, BackgroundTask, Plugin
from core.services import plugins, secret_store, tasks, voice


def _client_error(code):
    return ClientError({"Error": {"Code": code, "Message": code}}, "operation")


class FakeSecretsManager:
    def __init__(self):
        self.secrets = {}
        self.calls = []

    def create_secret(self, Name, SecretString):
        self.calls.append(("create_secret", Name))
        if Name in self.secrets:
            raise _client_error("ResourceExistsException")
        self.secrets[Name] = SecretString

    def put_secret_value(self, SecretId, SecretString):
        self.calls.append(("put_secret_value", SecretId))
        if SecretId not in self.secrets:
            raise _client_error("ResourceNotFoundException")
        self.secrets[SecretId] = SecretString

    def get_secret_value(self, SecretId):
        if SecretId not in self.secrets:
            raise _client_error("ResourceNotFoundException")
        return {"Name": SecretId, "SecretString": self.secrets[SecretId]}


@pytest.fixture
def secrets_manager(monkeypatch):
    fake = FakeSecretsManager()
    monkeypatch.setattr(secret_store, "_get_client", lambda: fake)
    return fake


VAPI_KEYS = {"publicApiKey": "pub_123", "privateApiKey": "priv_456"}


def _connect(org_context, value=None):
    plugins.upsert_secret("vapi", value or VAPI_KEYS, context=org_context)
    return tasks.run_pending_tasks()


def test_upsert_secret_is_scheduled_then_written(server_db, db_session, secrets_manager, org_context):
    scheduled = plugins.upsert_secret("vapi", VAPI_KEYS, context=org_context)
    assert scheduled["status"] == "scheduled"
    assert plugins.get_plugin("vapi", context=org_context) is None

    assert tasks.run_pending_tasks() == {"status": "ok", "completed": 1, "failed": 0}

    plugin = plugins.get_plugin("vapi", context=org_context)
    assert plugin["secret_name"] == "tenant/org_1/vapi"
    assert json.loads(secrets_manager.secrets["tenant/org_1/vapi"]) == VAPI_KEYS

    task = db_session.query(BackgroundTask).one()
    assert task.status == "completed"
    assert "value" not in task.payload
    assert task.idempotency_key is None

    event = db_session.query(AuditEvent).filter(AuditEvent.event_type == EVENT_PLUGIN_CONNECTED).one()
    assert event.actor_id == "user_1"
    assert "priv_456" not in json.dumps(event.metadata_ or {})


def test_repeated_upserts_before_worker_collapse(server_db, db_session, secrets_manager, org_context):
    plugins.upsert_secret("vapi", {"publicApiKey": "old", "privateApiKey": "old"}, context=org_context)
    plugins.upsert_secret("vapi", VAPI_KEYS, context=org_context)
    assert db_session.query(BackgroundTask).count() == 1

    tasks.run_pending_tasks()
    assert json.loads(secrets_manager.secrets["tenant/org_1/vapi"]) == VAPI_KEYS


def test_reconnect_updates_existing_secret(server_db, db_session, secrets_manager, org_context):
    _connect(org_context)
    _connect(org_context, {"publicApiKey": "pub_new", "privateApiKey": "priv_new"})

    assert ("put_secret_value", "tenant/org_1/vapi") in secrets_manager.calls
    assert db_session.query(Plugin).count() == 1
    credentials = plugins.get_plugin_credentials("org_1", "vapi")
    assert credentials["publicApiKey"] == "pub_new"


def test_upsert_during_running_write_queues_a_new_task(server_db, db_session, monkeypatch, secrets_manager, org_context):
    newer = {"publicApiKey": "pub_new", "privateApiKey": "priv_new"}
    original_upsert = secret_store.upsert_secret
    calls = []

    def upsert_then_reconnect(secret_name, value):
        calls.append(value["privateApiKey"])
        if len(calls) == 1:
            plugins.upsert_secret("vapi", newer, context=org_context)
        return original_upsert(secret_name, value)

    monkeypatch.setattr(secret_store, "upsert_secret", upsert_then_reconnect)

    assert _connect(org_context)["completed"] == 1
    assert tasks.run_pending_tasks()["completed"] == 1

    assert calls == ["priv_456", "priv_new"]
    assert json.loads(secrets_manager.secrets["tenant/org_1/vapi"]) == newer
    rows = db_session.query(BackgroundTask).order_by(BackgroundTask.id).all()
    assert [row.status for row in rows] == ["completed", "completed"]
    assert all("value" not in row.payload for row in rows)


def test_failed_write_is_dropped_when_newer_value_is_queued(server_db, db_session, monkeypatch, secrets_manager, org_context):
    newer = {"publicApiKey": "pub_new", "privateApiKey": "priv_new"}
    original_create = secrets_manager.create_secret
    attempts = []

    def fail_first_create(Name, SecretString):
        attempts.append(json.loads(SecretString)["privateApiKey"])
        if len(attempts) == 1:
            plugins.upsert_secret("vapi", newer, context=org_context)
            raise _client_error("InternalServiceError")
        return original_create(Name, SecretString)

    monkeypatch.setattr(secrets_manager, "create_secret", fail_first_create)

    _connect(org_context)
    tasks.run_pending_tasks()

    assert json.loads(secrets_manager.secrets["tenant/org_1/vapi"]) == newer
    first, second = db_session.query(BackgroundTask).order_by(BackgroundTask.id).all()
    assert first.status == "failed"
    assert "superseded" in first.last_error
    assert "value" not in first.payload
    assert second.status == "completed"
    assert tasks.run_pending_tasks()["completed"] == 0


def test_secret_store_failure_leaves_no_plugin(server_db, db_session, monkeypatch, secrets_manager, org_context):
    def broken_create(Name, SecretString):
        raise _client_error("ValidationException")

    monkeypatch.setattr(secrets_manager, "create_secret", broken_create)
    result = _connect(org_context)

    assert result["completed"] == 0
    assert plugins.get_plugin("vapi", context=org_context) is None
    task = db_session.query(BackgroundTask).one()
    assert task.status == "pending"
    assert "Invalid secret name or value" in task.last_error


def test_upsert_secret_validation(server_db, org_context):
    with pytest.raises(ValidationIssue):
        plugins.upsert_secret("zendesk", VAPI_KEYS, context=org_context)
    with pytest.raises(ValidationIssue):
        plugins.upsert_secret("vapi", {}, context=org_context)
    with pytest.raises(ValidationIssue):
        plugins.upsert_secret("vapi", {"publicApiKey": 123}, context=org_context)


def test_remove_plugin_keeps_secret(server_db, secrets_manager, org_context):
    _connect(org_context)
    assert plugins.remove_plugin("vapi", context=org_context) == {"status": "removed", "service": "vapi"}
    assert plugins.get_plugin("vapi", context=org_context) is None
    assert "tenant/org_1/vapi" in secrets_manager.secrets

    with pytest.raises(NotFound, match="Plugin not found"):
        plugins.remove_plugin("vapi", context=org_context)


def test_credentials_lookup_errors(server_db, db_session, secrets_manager):
    with pytest.raises(NotFound, match="Plugin not found"):
        plugins.get_plugin_credentials("org_1", "vapi")

    plugins.upsert_plugin(db_session, organization_id="org_1", service="vapi", secret_name="tenant/org_1/vapi")
    with pytest.raises(NotFound, match="Credentials not found"):
        plugins.get_plugin_credentials("org_1", "vapi")


def test_put_on_vanished_secret_is_configuration_error(monkeypatch, secrets_manager):
    def create_conflict(Name, SecretString):
        raise _client_error("ResourceExistsException")

    monkeypatch.setattr(secrets_manager, "create_secret", create_conflict)
    with pytest.raises(ConfigurationError, match="Secret not found during update"):
        secret_store.upsert_secret("tenant/org_1/vapi", VAPI_KEYS)


def test_parse_secret_string():
    assert secret_store.parse_secret_string(None) is None
    assert secret_store.parse_secret_string({"SecretString": "not json"}) is None
    assert secret_store.parse_secret_string({"SecretString": "[1, 2]"}) is None
    assert secret_store.parse_secret_string({"SecretString": '{"a": "b"}'}) == {"a": "b"}


class FakeVapiClient:
    def __init__(self, status_code=200, payload=None, **kwargs):
        self.status_code = status_code
        self.payload = payload if payload is not None else []
        self.kwargs = kwargs
        self.paths = []

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def get(self, path):
        self.paths.append(path)
        request = httpx.Request("GET", f"https://api.vapi.ai{path}")
        return httpx.Response(self.status_code, json=self.payload, request=request)


def _patch_vapi(monkeypatch, status_code=200, payload=None):
    created = []

    def factory(**kwargs):
        client = FakeVapiClient(status_code, payload, **kwargs)
        created.append(client)
        return client

    monkeypatch.setattr(voice.httpx, "Client", factory)
    return created


def test_vapi_lookups_use_private_key(server_db, monkeypatch, secrets_manager, org_context):
    _connect(org_context)
    created = _patch_vapi(monkeypatch, payload=[{"id": "pn_1", "number": "+15550100"}])

    numbers = voice.get_phone_numbers(context=org_context)
    assert numbers == [{"id": "pn_1", "number": "+15550100"}]
    assert created[0].paths == ["/phone-number"]
    assert created[0].kwargs["headers"]["Authorization"] == "Bearer priv_456"

    voice.get_assistants(context=org_context)
    assert created[1].paths == ["/assistant"]


def test_vapi_rejected_key_asks_for_reconnect(server_db, monkeypatch, secrets_manager, org_context):
    _connect(org_context)
    _patch_vapi(monkeypatch, status_code=401, payload={"message": "Unauthorized"})
    with pytest.raises(BadRequest, match="reconnect"):
        voice.get_assistants(context=org_context)


def test_incomplete_vapi_credentials(server_db, monkeypatch, secrets_manager, org_context):
    _connect(org_context, {"publicApiKey": "pub_only"})
    _patch_vapi(monkeypatch)
    with pytest.raises(BadRequest, match="Credentials incomplete"):
        voice.get_phone_numbers(context=org_context)


def test_public_voice_key(server_db, secrets_manager, org_context):
    assert voice.get_public_voice_key("org_1") is None
    _connect(org_context)
    assert voice.get_public_voice_key("org_1") == {"public_api_key": "pub_123"}
