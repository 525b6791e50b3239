import pytest

from contact_api.models import Submission, SubmissionStatus
from contact_api.services.channels import ROLE_FALLBACK, ROLE_NOTIFY, ROLE_STORE, ChannelError, ChannelResult
from contact_api.services.delivery import ChannelState, DeliveryChain, DeliveryStatus

pytestmark = pytest.mark.anyio


@pytest.fixture
def submission():
    return Submission(request_id="req-1", name="A", email="a@b.co", subject="S", message="M")


async def test_store_success_is_sent_even_without_notifier(make_channel, fake_sleep, submission):
    store = make_channel("supabase", role=ROLE_STORE, outcomes=[ChannelResult(external_id="row-9")])
    sendgrid = make_channel("sendgrid", configured=False)
    fallback = make_channel("tmp", role=ROLE_FALLBACK, durable=False)

    report = await DeliveryChain([store, sendgrid, fallback], sleep=fake_sleep).deliver(submission)

    assert report.status == DeliveryStatus.sent
    assert report.durable and not report.notified
    assert (report.channel, report.external_id) == ("supabase", "row-9")
    assert sendgrid.calls == [] and fallback.calls == []
    assert report.status_patch()["status"] == SubmissionStatus.sent


async def test_notification_is_attempted_independently_of_store(make_channel, fake_sleep, submission):
    store = make_channel("supabase", role=ROLE_STORE)
    sendgrid = make_channel("sendgrid", outcomes=[ChannelResult(external_id="sg-1")])

    report = await DeliveryChain([store, sendgrid], sleep=fake_sleep).deliver(submission)

    assert report.durable and report.notified
    assert (report.channel, report.external_id) == ("sendgrid", "sg-1")
    assert store.calls == ["req-1"] and sendgrid.calls == ["req-1"]


async def test_transient_failures_retry_with_exponential_backoff(make_channel, fake_sleep, sleeps, submission):
    sendgrid = make_channel(
        "sendgrid",
        max_attempts=3,
        outcomes=[ChannelError("503"), ChannelError("503"), ChannelResult(external_id="sg-3")],
    )

    report = await DeliveryChain([sendgrid], sleep=fake_sleep).deliver(submission)

    assert report.status == DeliveryStatus.sent
    assert len(sendgrid.calls) == 3
    assert sleeps == [0.5, 1.5]
    assert report.attempts[0].attempts == 3
    assert report.attempts[0].state == ChannelState.success


async def test_smtp_used_when_sendgrid_exhausted(make_channel, fake_sleep, submission):
    sendgrid = make_channel("sendgrid", max_attempts=3, outcomes=[ChannelError("down")] * 3)
    smtp = make_channel("smtp", outcomes=[ChannelResult(external_id="<id@mail>")])

    report = await DeliveryChain([sendgrid, smtp], sleep=fake_sleep).deliver(submission)

    assert len(sendgrid.calls) == 3
    assert report.attempts[0].state == ChannelState.exhausted
    assert (report.channel, report.external_id) == ("smtp", "<id@mail>")


async def test_permanent_failure_moves_on_without_retry(make_channel, fake_sleep, sleeps, submission):
    sendgrid = make_channel("sendgrid", max_attempts=3, outcomes=[ChannelError("401", transient=False)])
    smtp = make_channel("smtp")

    report = await DeliveryChain([sendgrid, smtp], sleep=fake_sleep).deliver(submission)

    assert len(sendgrid.calls) == 1
    assert sleeps == []
    assert report.attempts[0].state == ChannelState.next_channel
    assert report.channel == "smtp"


async def test_smtp_skipped_when_sendgrid_succeeds(make_channel, fake_sleep, submission):
    sendgrid = make_channel("sendgrid")
    smtp = make_channel("smtp")

    await DeliveryChain([sendgrid, smtp], sleep=fake_sleep).deliver(submission)
    assert smtp.calls == []


async def test_timeout_counts_as_transient(make_channel, fake_sleep, submission):
    sendgrid = make_channel(
        "sendgrid", max_attempts=2, timeout=0.05, outcomes=["hang", ChannelResult(external_id="sg-2")]
    )

    report = await DeliveryChain([sendgrid], sleep=fake_sleep).deliver(submission)

    assert report.status == DeliveryStatus.sent
    assert len(sendgrid.calls) == 2


async def test_fallback_only_is_marked_and_not_sent(make_channel, fake_sleep, submission):
    chain = DeliveryChain(
        [
            make_channel("supabase", role=ROLE_STORE, configured=False),
            make_channel("sendgrid", configured=False),
            make_channel("smtp", configured=False),
            make_channel("tmp", role=ROLE_FALLBACK, durable=False),
        ],
        sleep=fake_sleep,
    )

    report = await chain.deliver(submission)

    assert report.status == DeliveryStatus.fallback
    assert report.ok and report.fallback_used
    assert report.channel == "tmp"
    assert report.status_patch()["status"] == SubmissionStatus.pending
    assert report.attempt_for(ROLE_NOTIFY) is None


async def test_exhausted_when_nothing_succeeds(make_channel, fake_sleep, submission):
    chain = DeliveryChain(
        [
            make_channel("sendgrid", outcomes=[ChannelError("boom", transient=False)]),
            make_channel("tmp", role=ROLE_FALLBACK, outcomes=[ChannelError("read-only fs", transient=False)]),
        ],
        sleep=fake_sleep,
    )

    report = await chain.deliver(submission)

    assert report.status == DeliveryStatus.failed
    assert not report.ok
    assert "sendgrid: boom" in report.error and "tmp: read-only fs" in report.error
    assert report.status_patch() == {"status": SubmissionStatus.failed, "error": report.error}


async def test_unexpected_exception_falls_through(make_channel, fake_sleep, submission):
    sendgrid = make_channel("sendgrid", max_attempts=3, outcomes=[RuntimeError("bug")])
    smtp = make_channel("smtp")

    report = await DeliveryChain([sendgrid, smtp], sleep=fake_sleep).deliver(submission)

    assert len(sendgrid.calls) == 1
    assert report.channel == "smtp"


async def test_already_sent_record_short_circuits(make_channel, fake_sleep, submission):
    sent = submission.model_copy(update={"status": SubmissionStatus.sent, "channel": "sendgrid", "external_id": "sg"})
    sendgrid = make_channel("sendgrid")

    report = await DeliveryChain([sendgrid], sleep=fake_sleep).deliver(sent)

    assert report.status == DeliveryStatus.skipped
    assert report.external_id == "sg"
    assert sendgrid.calls == []
    assert report.status_patch() == {}
