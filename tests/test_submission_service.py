import asyncio

import pytest

from contact_api.core.errors import DeliveryExhausted, Unauthorized, ValidationError
from contact_api.models import Submission, SubmissionStatus
from contact_api.services.channels import ROLE_FALLBACK, ChannelError, ChannelResult
from contact_api.services.delivery import DeliveryChain
from contact_api.services.store import JsonFileSubmissionStore
from contact_api.services.submission import RequestMeta, SubmissionResult, SubmissionService

pytestmark = pytest.mark.anyio


@pytest.fixture
def store(tmp_path):
    return JsonFileSubmissionStore(tmp_path / "submissions.json")


def make_service(store, channels, fake_sleep, admin_token="token"):
    return SubmissionService(
        store,
        DeliveryChain(channels, sleep=fake_sleep),
        admin_token=admin_token,
        id_factory=lambda: "generated-id",
    )


async def test_creates_and_marks_sent(store, make_channel, fake_sleep, valid_payload):
    sendgrid = make_channel("sendgrid", outcomes=[ChannelResult(external_id="sg-1")])
    service = make_service(store, [sendgrid], fake_sleep)

    result = await service.create_submission(valid_payload, RequestMeta("10.0.0.5", "pytest"))

    assert result.created
    assert result.submission.request_id == "generated-id"
    assert result.submission.status == SubmissionStatus.sent
    assert result.submission.external_id == "sg-1"
    assert result.submission.ip_address == "10.0.0.5"
    body = result.to_body()
    assert body["ok"] and body["method"] == "sendgrid"
    assert body["email"] == {"sent": True, "channel": "sendgrid", "id": "sg-1", "error": None}


async def test_duplicate_request_id_returns_existing_without_delivery(store, make_channel, fake_sleep, valid_payload):
    sendgrid = make_channel("sendgrid")
    service = make_service(store, [sendgrid], fake_sleep)
    payload = {**valid_payload, "request_id": "client-1"}

    first = await service.create_submission(payload)
    second = await service.create_submission({**payload, "message": "changed"})

    assert sendgrid.calls == ["client-1"]
    assert not second.created
    assert second.to_body()["duplicate"] is True
    assert second.to_body()["submission"] == first.to_body()["submission"]
    assert len(await store.list_all()) == 1


async def test_concurrent_duplicates_observe_first_result(store, make_channel, fake_sleep, valid_payload):
    sendgrid = make_channel("sendgrid", timeout=2.0)
    original_send = sendgrid.send

    async def slow_send(submission):
        await asyncio.sleep(0.05)
        return await original_send(submission)

    sendgrid.send = slow_send
    service = make_service(store, [sendgrid], fake_sleep)
    payload = {**valid_payload, "request_id": "same"}

    first, second = await asyncio.gather(
        service.create_submission(payload),
        service.create_submission(payload),
    )

    assert len(sendgrid.calls) == 1
    assert sorted([first.created, second.created]) == [False, True]
    assert first.submission.model_dump() == second.submission.model_dump()
    assert first.submission.status == SubmissionStatus.sent


async def test_validation_error_has_no_side_effects(store, make_channel, fake_sleep, valid_payload):
    sendgrid = make_channel("sendgrid")
    service = make_service(store, [sendgrid], fake_sleep)

    with pytest.raises(ValidationError):
        await service.create_submission({**valid_payload, "email": "not-an-email"})

    assert sendgrid.calls == []
    assert await store.list_all() == []


async def test_exhausted_delivery_marks_record_failed(store, make_channel, fake_sleep, valid_payload):
    channels = [
        make_channel("sendgrid", outcomes=[ChannelError("down", transient=False)]),
        make_channel("tmp", role=ROLE_FALLBACK, outcomes=[ChannelError("no disk", transient=False)]),
    ]
    service = make_service(store, channels, fake_sleep)

    with pytest.raises(DeliveryExhausted):
        await service.create_submission(valid_payload)

    record = await store.get("generated-id")
    assert record.status == SubmissionStatus.failed
    assert "down" in record.error


async def test_fallback_keeps_record_pending(store, make_channel, fake_sleep, valid_payload):
    channels = [
        make_channel("sendgrid", configured=False),
        make_channel("tmp", role=ROLE_FALLBACK, durable=False),
    ]
    service = make_service(store, channels, fake_sleep)

    result = await service.create_submission(valid_payload)

    body = result.to_body()
    assert body["fallback"] is True and body["warning"]
    assert body["method"] == "tmp"
    assert result.submission.status == SubmissionStatus.pending
    assert "email" not in body


async def test_list_requires_matching_token(store, make_channel, fake_sleep, valid_payload):
    service = make_service(store, [make_channel("sendgrid")], fake_sleep, admin_token="token")
    await service.create_submission(valid_payload)

    for token in (None, "", "wrong"):
        with pytest.raises(Unauthorized):
            await service.list_submissions(token)
    assert len(await service.list_submissions("token")) == 1


async def test_list_fails_closed_without_configured_token(store, make_channel, fake_sleep):
    service = make_service(store, [make_channel("sendgrid")], fake_sleep, admin_token=None)

    for token in (None, "", "changeme"):
        with pytest.raises(Unauthorized):
            await service.list_submissions(token)


async def test_replaying_failed_submission_redelivers(store, make_channel, fake_sleep, valid_payload):
    sendgrid = make_channel(
        "sendgrid",
        outcomes=[ChannelError("down", transient=False), ChannelResult(external_id="sg-2")],
    )
    tmp = make_channel("tmp", role=ROLE_FALLBACK, durable=False, outcomes=[ChannelError("no disk", transient=False)])
    service = make_service(store, [sendgrid, tmp], fake_sleep)
    payload = {**valid_payload, "request_id": "retry-me"}

    with pytest.raises(DeliveryExhausted):
        await service.create_submission(payload)
    second = await service.create_submission(payload)

    assert sendgrid.calls == ["retry-me", "retry-me"]
    assert second.submission.status == SubmissionStatus.sent
    assert second.submission.external_id == "sg-2"
    assert second.submission.error is None
    assert second.to_body()["duplicate"] is True


async def test_replaying_failed_submission_that_fails_again_is_not_reported_ok(
    store, make_channel, fake_sleep, valid_payload
):
    sendgrid = make_channel("sendgrid", outcomes=[ChannelError("down", transient=False)] * 2)
    service = make_service(store, [sendgrid], fake_sleep)
    payload = {**valid_payload, "request_id": "still-down"}

    for _ in range(2):
        with pytest.raises(DeliveryExhausted):
            await service.create_submission(payload)

    assert sendgrid.calls == ["still-down", "still-down"]
    assert (await store.get("still-down")).status == SubmissionStatus.failed


async def test_replaying_fallback_only_submission_keeps_warning(store, make_channel, fake_sleep, valid_payload):
    channels = [
        make_channel("sendgrid", configured=False),
        make_channel("tmp", role=ROLE_FALLBACK, durable=False),
    ]
    service = make_service(store, channels, fake_sleep)
    payload = {**valid_payload, "request_id": "ephemeral"}

    await service.create_submission(payload)
    body = (await service.create_submission(payload)).to_body()

    assert body["duplicate"] is True
    assert body["fallback"] is True and body["warning"]
    assert body["submission"]["status"] == "pending"


async def test_concurrent_duplicate_of_failed_delivery_is_not_reported_ok(
    store, make_channel, fake_sleep, valid_payload
):
    sendgrid = make_channel("sendgrid", timeout=2.0, outcomes=[ChannelError("down", transient=False)])
    original_send = sendgrid.send

    async def slow_send(submission):
        await asyncio.sleep(0.05)
        return await original_send(submission)

    sendgrid.send = slow_send
    service = make_service(store, [sendgrid], fake_sleep)
    payload = {**valid_payload, "request_id": "racing"}

    results = await asyncio.gather(
        service.create_submission(payload),
        service.create_submission(payload),
        return_exceptions=True,
    )

    assert len(sendgrid.calls) == 1
    assert all(isinstance(result, DeliveryExhausted) for result in results)


def test_stored_fallback_record_carries_warning():
    submission = Submission(
        request_id="r", name="A", email="a@b.co", subject="S", message="M", channel="tmp"
    )

    body = SubmissionResult(submission=submission, created=False).to_body()

    assert body["fallback"] is True and body["warning"]
