import pytest
import requests
from unittest.mock import AsyncMock, MagicMock

from dispatchers.mock_dispatchers import CrmDispatcher, EmailDispatcher
from dispatchers.routing_dispatcher import RoutingDispatcher
from dispatchers.webhook_dispatcher import WebhookDispatcher
from models.dispatch import DispatchResult


def http_response(status_code, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    return resp


@pytest.fixture
def session():
    return MagicMock()


@pytest.mark.asyncio
async def test_routing_sends_to_registered_dispatcher():
    sms = MagicMock()
    sms.execute = AsyncMock(return_value=DispatchResult.ok(sms_id="s-1"))
    router = RoutingDispatcher({"SEND_SMS": sms})

    result = await router.execute("send_sms", {"body": "hi"}, {})

    assert result.success
    sms.execute.assert_called_once_with("send_sms", {"body": "hi"}, {})


@pytest.mark.asyncio
async def test_routing_rejects_unknown_action_type():
    result = await RoutingDispatcher().register("send_email", EmailDispatcher()).execute("send_fax", {}, {})

    assert not result.success
    assert not result.retryable
    assert "send_fax" in result.error


@pytest.mark.asyncio
async def test_crm_dispatcher_moves_contact_stage():
    result = await CrmDispatcher().execute("move_pipeline_stage", {"stage": "won"}, {"contact": {"id": "c-1"}})
    assert result.context_updates["contact"] == {"id": "c-1", "stage": "won"}


@pytest.mark.asyncio
async def test_webhook_posts_context_by_default(session):
    session.request.return_value = http_response(200, {"ok": True})
    dispatcher = WebhookDispatcher(timeout=3, session=session)

    result = await dispatcher.execute("call_webhook", {"url": "https://hooks.test/x"}, {"payload": {"a": 1}})

    assert result.success
    assert result.context_updates == {"webhook_status": 200, "webhook_response": {"ok": True}}
    args, kwargs = session.request.call_args
    assert args == ("POST", "https://hooks.test/x")
    assert kwargs["json"] == {"context": {"payload": {"a": 1}}}
    assert kwargs["timeout"] == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("status,retryable", [(503, True), (429, True), (400, False), (404, False)])
async def test_webhook_error_status(session, status, retryable):
    session.request.return_value = http_response(status)

    result = await WebhookDispatcher(session=session).execute("call_webhook", {"url": "https://hooks.test/x"}, {})

    assert not result.success
    assert result.retryable is retryable
    assert str(status) in result.error


@pytest.mark.asyncio
async def test_webhook_timeout_is_retryable(session):
    session.request.side_effect = requests.exceptions.Timeout("read timed out")

    result = await WebhookDispatcher(session=session).execute("call_webhook", {"url": "https://hooks.test/x"}, {})

    assert not result.success
    assert result.retryable


@pytest.mark.asyncio
async def test_webhook_bad_request_is_not_retryable(session):
    session.request.side_effect = requests.exceptions.InvalidURL("bad url")

    result = await WebhookDispatcher(session=session).execute("call_webhook", {"url": "ht!tp://"}, {})

    assert not result.retryable


@pytest.mark.asyncio
async def test_webhook_without_url_fails(session):
    result = await WebhookDispatcher(session=session).execute("call_webhook", {}, {})

    assert not result.success
    assert not result.retryable
    session.request.assert_not_called()
