import base64
from pathlib import Path

import pytest

from app import models
from app.models import TrustState
from app.services import tasks

from .conftest import ADMIN, FAKE_GENERATE, OTHER_USER, USER, headers_for, write_feed_format

BASE = "/api/report_formats"


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def _import(client, principal=USER, **overrides):
    payload = {
        "id": "fmt-1",
        "name": "Plain Text",
        "content_type": "text/plain",
        "extension": "txt",
        "summary": "Plain text output",
        "files": [{"name": "generate", "content": _b64(FAKE_GENERATE)}],
        "params": [
            {"name": "Rows", "type": "integer", "value": "10", "default": "10", "min": "0", "max": "100"},
        ],
    }
    payload.update(overrides)
    return client.post(BASE, json=payload, headers=headers_for(principal))


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_requests_without_user_are_rejected(client):
    assert client.get(BASE).status_code == 401


def test_import_and_read_back(client):
    res = _import(client)
    assert res.status_code == 200, res.text
    created = res.json()
    assert created["uuid"] == "fmt-1"
    assert created["owner"] == "alice"
    assert created["active"] is False
    assert created["trust"] == TrustState.UNKNOWN.value
    assert created["params"][0]["name"] == "Rows"
    assert (created["params"][0]["type_min"], created["params"][0]["type_max"]) == (0, 100)

    listed = client.get(BASE, headers=headers_for(USER)).json()
    assert [item["uuid"] for item in listed] == ["fmt-1"]

    detail = client.get(f"{BASE}/fmt-1", headers=headers_for(USER))
    assert detail.status_code == 200
    assert detail.json()["name"] == "Plain Text"


def test_other_users_cannot_see_private_formats(client):
    _import(client)
    assert client.get(f"{BASE}/fmt-1", headers=headers_for(OTHER_USER)).status_code == 404
    assert client.get(BASE, headers=headers_for(OTHER_USER)).json() == []


def test_reimport_of_same_id_gets_fresh_id(client):
    first = _import(client).json()
    second = _import(client).json()
    assert first["uuid"] == "fmt-1"
    assert second["uuid"] != "fmt-1"
    assert second["name"] != first["name"]


@pytest.mark.parametrize(
    "params, code",
    [
        ([{"name": "P", "type": "colour", "value": "", "default": ""}], 9),
        ([{"name": "P", "type": "integer", "value": "9", "default": "1", "min": "1", "max": "5"}], 3),
        ([{"name": "P", "type": "string", "value": ""}], 5),
    ],
)
def test_import_validation_errors(client, params, code):
    res = _import(client, params=params)
    assert res.status_code == 422
    assert res.json()["detail"]["code"] == code
    assert res.json()["detail"]["kind"] == "validation-failed"


def test_duplicate_param_names_conflict(client):
    param = {"name": "P", "type": "string", "value": "", "default": ""}
    res = _import(client, params=[param, param])
    assert res.status_code == 409
    assert client.get(BASE, headers=headers_for(USER)).json() == []


def test_global_import_requires_admin(client):
    res = _import(client, **{"global": True})
    assert res.status_code == 403
    assert res.json()["detail"]["kind"] == "permission-denied"


def test_copy(client):
    _import(client)
    res = client.post(f"{BASE}/copy", json={"source_id": "fmt-1"}, headers=headers_for(USER))
    assert res.status_code == 200, res.text
    copy = res.json()
    assert copy["uuid"] != "fmt-1"
    assert copy["name"] != "Plain Text"
    assert [p["name"] for p in copy["params"]] == ["Rows"]

    clash = client.post(
        f"{BASE}/copy", json={"source_id": "fmt-1", "name": "Plain Text"}, headers=headers_for(USER)
    )
    assert clash.status_code == 409

    missing = client.post(f"{BASE}/copy", json={"source_id": "nope"}, headers=headers_for(USER))
    assert missing.status_code == 404


def test_modify(client):
    _import(client)
    res = client.patch(
        f"{BASE}/fmt-1",
        json={"name": "Renamed", "active": True, "param_name": "Rows", "param_value": _b64("42")},
        headers=headers_for(USER),
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["name"] == "Renamed"
    assert body["active"] is True
    assert body["params"][0]["value"] == "42"


@pytest.mark.parametrize(
    "format_id, payload, status",
    [
        ("nope", {"name": "x"}, 404),
        ("fmt-1", {"param_name": "Missing", "param_value": _b64("1")}, 404),
        ("fmt-1", {"param_name": "Rows", "param_value": _b64("500")}, 422),
        ("fmt-1", {"predefined": "2"}, 422),
        ("fmt-1", {"param_value": _b64("1")}, 422),
    ],
)
def test_modify_failures(client, format_id, payload, status):
    _import(client)
    res = client.patch(f"{BASE}/{format_id}", json=payload, headers=headers_for(USER))
    assert res.status_code == status


def test_delete_restore_and_empty_trash(client):
    _import(client)
    res = client.delete(f"{BASE}/fmt-1", headers=headers_for(USER))
    assert res.json() == {"id": "fmt-1", "ultimate": False}
    assert client.get(f"{BASE}/fmt-1", headers=headers_for(USER)).status_code == 404

    trash = client.get(f"{BASE}/trash", headers=headers_for(USER)).json()
    assert [item["original_uuid"] for item in trash] == ["fmt-1"]

    restored = client.post(f"{BASE}/trash/{trash[0]['uuid']}/restore", headers=headers_for(USER))
    assert restored.status_code == 200, restored.text
    assert restored.json()["uuid"] == "fmt-1"

    client.delete(f"{BASE}/fmt-1", headers=headers_for(USER))
    emptied = client.delete(f"{BASE}/trash", headers=headers_for(USER))
    assert emptied.json() == {"removed": 1}
    assert client.get(f"{BASE}/trash", headers=headers_for(USER)).json() == []


def test_ultimate_delete(client):
    _import(client)
    res = client.delete(f"{BASE}/fmt-1", params={"ultimate": True}, headers=headers_for(USER))
    assert res.status_code == 200
    assert client.get(f"{BASE}/trash", headers=headers_for(USER)).json() == []


def test_delete_missing_format(client):
    assert client.delete(f"{BASE}/nope", headers=headers_for(USER)).status_code == 404


def test_restore_missing_trash(client):
    res = client.post(f"{BASE}/trash/nope/restore", headers=headers_for(USER))
    assert res.status_code == 404


def test_format_in_use_by_alert(client, session_factory):
    _import(client)
    session = session_factory()
    try:
        alert = models.Alert(uuid="alert-1", name="Mail the boss", owner="alice")
        alert.method_data.append(models.AlertMethodData(name="send_report_format", data="fmt-1"))
        session.add(alert)
        session.commit()
    finally:
        session.close()

    alerts = client.get(f"{BASE}/fmt-1/alerts", headers=headers_for(USER)).json()
    assert alerts == [{"uuid": "alert-1", "name": "Mail the boss", "owner": "alice"}]

    res = client.delete(f"{BASE}/fmt-1", headers=headers_for(USER))
    assert res.status_code == 409
    assert res.json()["detail"]["kind"] == "integrity-conflict"


def test_verify_dispatches_to_celery(client):
    _import(client)
    res = client.post(f"{BASE}/fmt-1/verify", headers=headers_for(USER))
    assert res.status_code == 200
    body = res.json()
    assert body["execution_mode"] == "celery"
    assert body["task_id"]


def test_verify_runs_inline_without_broker(client, monkeypatch):
    def unreachable(*args, **kwargs):
        raise ConnectionError("broker down")

    monkeypatch.setattr(tasks.verify_report_format_task, "delay", unreachable)
    _import(client)

    res = client.post(f"{BASE}/fmt-1/verify", headers=headers_for(USER))

    assert res.status_code == 200
    assert res.json()["execution_mode"] == "inline"
    assert res.json()["trust"] == TrustState.UNKNOWN.value


def test_verify_unknown_format(client):
    assert client.post(f"{BASE}/nope/verify", headers=headers_for(USER)).status_code == 404


def test_sync_requires_admin(client, settings_env):
    write_feed_format(Path(settings_env.predefined_dir), "feed-1", "CSV")
    assert client.post(f"{BASE}/sync", headers=headers_for(USER)).status_code == 403

    res = client.post(f"{BASE}/sync", headers=headers_for(ADMIN))
    assert res.status_code == 200, res.text
    assert res.json()["created"] == ["feed-1"]

    feed_format = client.get(f"{BASE}/feed-1", headers=headers_for(OTHER_USER)).json()
    assert feed_format["predefined"] is True
    assert feed_format["trust"] == TrustState.YES.value


def test_apply(client):
    _import(client)
    client.patch(f"{BASE}/fmt-1", json={"active": True}, headers=headers_for(USER))

    res = client.post(
        f"{BASE}/fmt-1/apply", json={"xml_start": "<report id='r'>"}, headers=headers_for(USER)
    )

    assert res.status_code == 200, res.text
    assert res.headers["content-type"].startswith("text/plain")
    assert res.text.startswith(
        "<report id='r'><report_format><param><name>Rows</name><value>10</value></param>"
    )
    assert "<files><basedir>" in res.text


def test_apply_inactive_format_fails(client):
    _import(client)
    res = client.post(f"{BASE}/fmt-1/apply", json={"xml_start": "<report>"}, headers=headers_for(USER))
    assert res.status_code == 500
