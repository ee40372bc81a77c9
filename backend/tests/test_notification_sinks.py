"""
Notification Sink Tests — Redis pub/sub digest, SendGrid email digest, factory.

Network clients are replaced with in-memory fakes through the sinks'
client factories.
"""

import json
import threading
import uuid
from types import SimpleNamespace

import pytest

from db.models import StaffProfile, StaffRole
from notifications import (
    CollectingSink,
    EmailDigestSink,
    NotificationMessage,
    RedisNotificationSink,
    build_sink,
)
from notifications.redis_sink import channel_for


def _message(title="Order queued", level="INFO"):
    return NotificationMessage(
        id=str(uuid.uuid4()),
        recipient_id="r-1",
        level=level,
        channel="IN_APP",
        title=title,
        body="Hillside Primary is in the print queue",
        created_at="2026-03-10T12:00:00",
    )


class FakeRedis:
    def __init__(self):
        self.published: list[tuple[str, str]] = []
        self.closed = False

    async def publish(self, channel, payload):
        self.published.append((channel, payload))
        return 0

    async def aclose(self):
        self.closed = True


class FakeSendGrid:
    sent: list = []

    def __init__(self, api_key=None, status_code=202):
        self.api_key = api_key
        self.status_code = status_code

    def send(self, mail):
        FakeSendGrid.sent.append(mail)
        return SimpleNamespace(status_code=self.status_code)


@pytest.mark.asyncio
class TestRedisSink:
    async def test_publishes_one_digest_per_recipient(self):
        fake = FakeRedis()
        sink = RedisNotificationSink("redis://test", client_factory=lambda url: fake)
        recipient = uuid.uuid4()

        ok = await sink.deliver(recipient, [_message("a"), _message("b")])

        assert ok is True
        assert fake.closed
        assert len(fake.published) == 1
        channel, payload = fake.published[0]
        assert channel == f"notifications:{recipient}"
        body = json.loads(payload)
        assert body["type"] == "notification_digest"
        assert body["payload"]["count"] == 2
        assert [n["title"] for n in body["payload"]["notifications"]] == ["a", "b"]

    async def test_publish_error_propagates_and_closes(self):
        class BrokenRedis(FakeRedis):
            async def publish(self, channel, payload):
                raise ConnectionError("refused")

        broken = BrokenRedis()
        sink = RedisNotificationSink("redis://test", client_factory=lambda url: broken)

        with pytest.raises(ConnectionError):
            await sink.deliver("r-1", [_message()])
        assert broken.closed

    async def test_channel_name(self):
        assert channel_for("abc") == "notifications:abc"


@pytest.mark.asyncio
class TestEmailDigestSink:
    async def test_sends_digest_to_staff_email(self, store, test_db):
        staff = StaffProfile(id=uuid.uuid4(), full_name="Olu", email="olu@printrun.app", role=StaffRole.OPERATOR)
        test_db.add(staff)
        await test_db.commit()
        FakeSendGrid.sent = []

        sink = EmailDigestSink(store, "sg-key", "noreply@printrun.app", client_factory=FakeSendGrid)
        ok = await sink.deliver(staff.id, [_message("<b>Order</b> queued")])

        assert ok is True
        assert len(FakeSendGrid.sent) == 1
        mail = FakeSendGrid.sent[0].get()
        assert mail["personalizations"][0]["to"][0]["email"] == "olu@printrun.app"
        assert mail["subject"] == "PrintRun: 1 new notification"
        assert "&lt;b&gt;Order&lt;/b&gt;" in mail["content"][0]["value"]

    async def test_send_runs_off_the_event_loop_thread(self, store, test_db):
        staff = StaffProfile(id=uuid.uuid4(), full_name="Ifa", email="ifa@printrun.app", role=StaffRole.ADMIN)
        test_db.add(staff)
        await test_db.commit()
        send_threads = []

        class ThreadRecordingSendGrid(FakeSendGrid):
            def send(self, mail):
                send_threads.append(threading.get_ident())
                return SimpleNamespace(status_code=202)

        sink = EmailDigestSink(store, "sg-key", "noreply@printrun.app", client_factory=ThreadRecordingSendGrid)
        assert await sink.deliver(staff.id, [_message()]) is True
        assert len(send_threads) == 1
        assert send_threads[0] != threading.get_ident()

    async def test_unknown_recipient_is_not_delivered(self, store):
        sink = EmailDigestSink(store, "sg-key", "noreply@printrun.app", client_factory=FakeSendGrid)
        assert await sink.deliver(uuid.uuid4(), [_message()]) is False

    async def test_non_2xx_is_failure(self, store, test_db):
        staff = StaffProfile(id=uuid.uuid4(), full_name="Sam", email="sam@printrun.app", role=StaffRole.ADMIN)
        test_db.add(staff)
        await test_db.commit()

        sink = EmailDigestSink(
            store,
            "sg-key",
            "noreply@printrun.app",
            client_factory=lambda api_key: FakeSendGrid(api_key, status_code=500),
        )
        assert await sink.deliver(staff.id, [_message(), _message()]) is False


class TestBuildSink:
    def _settings(self, name):
        return SimpleNamespace(
            notification_sink=name,
            redis_url="redis://localhost:6379/0",
            sendgrid_api_key="key",
            notification_from_email="noreply@printrun.app",
        )

    def test_redis(self):
        assert isinstance(build_sink(self._settings("redis"), store=None), RedisNotificationSink)

    def test_email(self):
        assert isinstance(build_sink(self._settings("email"), store=None), EmailDigestSink)

    def test_memory(self):
        assert isinstance(build_sink(self._settings("memory"), store=None), CollectingSink)

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown notification sink"):
            build_sink(self._settings("carrier-pigeon"), store=None)
