from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import Engine, PROJECT_ID, node, edge
from apis.campaign_api import create_campaign_api
from apis.chatflow_api import create_chatflow_api
from apis.execution_api import create_execution_api
from apis.reminder_api import create_reminder_api
from models.guest_data import GuestData
from models.template_data import TemplateData

HEADERS = {"x-project-id": PROJECT_ID}


@pytest.fixture
def client():
    engine = Engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for guest_id, name in (("g1", "Alice"), ("g2", "Bob")):
            await engine.campaign_db.save_guest(GuestData(
                id=guest_id, name=name, phone=f"+62811{guest_id}", project_id=PROJECT_ID
            ))
        await engine.campaign_db.save_template(TemplateData(
            id="tpl-invite", name="invitation", content="Hi {{name}}", project_id=PROJECT_ID
        ))
        yield
        await engine.settle()

    app = FastAPI(lifespan=lifespan)
    app.include_router(create_chatflow_api(log_util=engine.log_util, chatflow_service=engine.chatflow_service))
    app.include_router(create_campaign_api(
        log_util=engine.log_util,
        campaign_service=engine.campaign_service,
        execution_service=engine.execution_service,
    ))
    app.include_router(create_execution_api(log_util=engine.log_util, execution_service=engine.execution_service))
    app.include_router(create_reminder_api(log_util=engine.log_util, reminder_service=engine.reminder_service))

    with TestClient(app) as test_client:
        yield test_client


def _create_chatflow(client, edges=None):
    nodes = [
        node("trigger", "trigger"),
        node("send", "send_template", templateId="tpl-invite", variables={"name": "{{guest_name}}"}),
        node("end", "end"),
    ]
    edges = edges if edges is not None else [edge("trigger", "send"), edge("send", "end")]
    response = client.post("/chatflow/create", json={"name": "Invite", "nodes": nodes, "edges": edges}, headers=HEADERS)
    assert response.status_code == 200
    return response.json()


def test_project_header_is_required(client):
    assert client.get("/campaign/list").status_code == 401
    assert client.get("/chatflow/list").status_code == 401


def test_publish_rejects_invalid_chatflow(client):
    chatflow = _create_chatflow(client, edges=[edge("trigger", "send")])

    response = client.post(f"/chatflow/publish/{chatflow['id']}")

    assert response.status_code == 400
    assert "End node \"end\" is not connected" in response.json()["detail"]["errors"]
    validation = client.get(f"/chatflow/validate/{chatflow['id']}").json()
    assert validation["valid"] is False


def test_campaign_lifecycle(client):
    chatflow = _create_chatflow(client)
    assert client.post(f"/chatflow/publish/{chatflow['id']}").json()["status"] == "published"

    response = client.post("/campaign/create", json={"name": "Wedding", "chatflow_id": chatflow["id"]}, headers=HEADERS)
    assert response.status_code == 200
    campaign = response.json()
    assert campaign["status"] == "draft"
    assert campaign["chatflow_name"] == "Invite"

    started = client.post(f"/campaign/start/{campaign['id']}")
    assert started.status_code == 200
    assert started.json()["status"] == "running"
    assert client.post(f"/campaign/start/{campaign['id']}").status_code == 409

    executions = client.get(f"/campaign/{campaign['id']}/executions").json()
    assert sorted(e["guest_id"] for e in executions) == ["g1", "g2"]

    detail = client.get(f"/campaign/detail/{campaign['id']}").json()
    assert detail["stats"]["total_guests"] == 2

    cancelled = client.post(f"/campaign/cancel/{campaign['id']}")
    assert cancelled.json()["status"] == "archived"


def test_empty_audience_and_missing_campaign(client):
    chatflow = _create_chatflow(client)
    campaign = client.post(
        "/campaign/create",
        json={"name": "Nobody", "chatflow_id": chatflow["id"], "guest_filter": {"categories": ["vip"]}},
        headers=HEADERS,
    ).json()

    assert client.post(f"/campaign/start/{campaign['id']}").status_code == 422
    assert client.get("/campaign/detail/campaign:project-1:missing").status_code == 404

    preview = client.post("/campaign/preview-guests", json={"guest_filter": {"custom_guest_ids": ["g2"]}}, headers=HEADERS)
    assert preview.json()["total"] == 1


def test_bulk_cancel_reports_each_id(client):
    response = client.post("/execution/bulk/cancel", json={"execution_ids": ["execution:project-1:missing"]})

    assert response.status_code == 200
    body = response.json()
    assert body["succeeded"] == []
    assert body["failed"][0]["reason"] == "not_found"


def test_campaign_create_rejects_lifecycle_status(client):
    chatflow = _create_chatflow(client)

    response = client.post(
        "/campaign/create",
        json={"name": "Wedding", "chatflow_id": chatflow["id"], "status": "running"},
        headers=HEADERS,
    )

    assert response.status_code == 422
    assert client.get("/campaign/list", headers=HEADERS).json() == []


def test_reminder_routes(client):
    chatflow = _create_chatflow(client)
    campaign = client.post("/campaign/create", json={"name": "Wedding", "chatflow_id": chatflow["id"]}, headers=HEADERS).json()
    client.post(f"/campaign/start/{campaign['id']}")

    response = client.post(f"/reminder/create/{campaign['id']}", json={
        "name": "Nudge",
        "trigger_at": "2030-01-01T09:00:00Z",
        "action": "resend_to_non_responders",
        "target_filter": {"only_non_responders": True},
    })
    assert response.status_code == 200
    reminder = response.json()
    assert reminder["status"] == "scheduled"

    listed = client.get(f"/reminder/campaign/{campaign['id']}").json()
    assert [r["id"] for r in listed] == [reminder["id"]]

    triggered = client.post(f"/reminder/trigger/{reminder['id']}")
    assert triggered.status_code == 200
    assert sorted(triggered.json()["target_guest_ids"]) == ["g1", "g2"]
    assert client.post(f"/reminder/trigger/{reminder['id']}").status_code == 409

    assert client.delete(f"/reminder/delete/{reminder['id']}").json()["deleted"] is True
    assert client.get(f"/reminder/detail/{reminder['id']}").status_code == 404
