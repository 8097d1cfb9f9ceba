"""Tests for the payment request lifecycle."""

import pytest

from chiprelay.audit import EventType
from chiprelay.errors import NotFoundError, RequestStateError, ValidationError
from chiprelay.notify import Notification
from chiprelay.requests import REQUEST_TTL_SECONDS, PaymentRequestBook
from chiprelay.store import Database

from conftest import USDC


PAYER = "0x" + "a1" * 20
RECIPIENT = "0x" + "b1" * 20
TX_HASH = "0x" + "ab" * 32


class Clock:
    def __init__(self, now=1_700_000_000):
        self.now = now

    def __call__(self):
        return self.now


class ExplodingNotifier:
    def send(self, notification: Notification) -> bool:
        raise RuntimeError("push service down")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "store.sqlite3")


@pytest.fixture
def book(db, notifier, audit, clock):
    return PaymentRequestBook(db, notifier=notifier, audit=audit, clock=clock)


def count_rows(db):
    with db.reader() as conn:
        return conn.execute("SELECT COUNT(*) FROM payment_requests").fetchone()[0]


class TestCreate:
    def test_create_new_request(self, book, notifier, clock):
        result = book.create_or_remind(PAYER, RECIPIENT, USDC, "12.5", memo="Dinner")

        assert result.to_dict() == {
            "requestId": result.request_id,
            "settleUrl": f"/settle/{result.request_id}",
            "isExisting": False,
        }
        request = book.require(result.request_id)
        assert request.status == "pending"
        assert request.amount == "12.500000"
        assert request.expires_at == clock.now + REQUEST_TTL_SECONDS

        (sent,) = notifier.sent
        assert sent.recipient_wallet == PAYER
        assert sent.title == "Payment Request from @someone"
        assert sent.message == "12.500000 USDC - Dinner"
        assert sent.url == f"https://splithub.app/settle/{result.request_id}"

    def test_pending_pair_reminds_instead_of_inserting(self, book, db, notifier, audit):
        first = book.create_or_remind(PAYER, RECIPIENT, USDC, "5")
        second = book.create_or_remind(PAYER, RECIPIENT, USDC, "7")

        assert second.is_existing
        assert second.request_id == first.request_id
        assert count_rows(db) == 1
        assert notifier.sent[-1].title.startswith("Reminder: ")
        assert [e.event_type for e in audit.read_events()] == [
            EventType.REQUEST_CREATED.value,
            EventType.REQUEST_REMINDED.value,
        ]

    def test_reverse_pair_is_independent(self, book):
        book.create_or_remind(PAYER, RECIPIENT, USDC, "5")
        assert not book.create_or_remind(RECIPIENT, PAYER, USDC, "5").is_existing

    def test_handles_come_from_users(self, book, db, notifier):
        db.upsert_user(RECIPIENT, twitter_handle="alice")
        db.upsert_user(PAYER, twitter_handle="bob")

        request = book.require(book.create_or_remind(PAYER, RECIPIENT, USDC, "1").request_id)

        assert request.requester_twitter == "alice"
        assert request.payer_twitter == "bob"
        assert notifier.sent[0].title == "Payment Request from @alice"

    @pytest.mark.parametrize("amount", ["0", "-3", "abc", "0.0000001"])
    def test_invalid_amount(self, book, amount):
        with pytest.raises(ValidationError, match="Invalid amount"):
            book.create_or_remind(PAYER, RECIPIENT, USDC, amount)

    def test_invalid_address(self, book):
        with pytest.raises(ValidationError, match="Invalid payer address"):
            book.create_or_remind("0x12", RECIPIENT, USDC, "1")

    def test_notification_failure_is_not_fatal(self, db, clock):
        book = PaymentRequestBook(db, notifier=ExplodingNotifier(), clock=clock)
        result = book.create_or_remind(PAYER, RECIPIENT, USDC, "1")
        assert not result.notification_sent
        assert book.require(result.request_id).is_pending

    def test_audit_failure_is_not_fatal(self, book, db, audit, clock, monkeypatch):
        def read_only(*args, **kwargs):
            raise OSError("audit volume is read-only")

        monkeypatch.setattr(audit, "log", read_only)

        request_id = book.create_or_remind(PAYER, RECIPIENT, USDC, "1").request_id
        assert book.complete(request_id, TX_HASH).status == "completed"

        book.create_or_remind(RECIPIENT, PAYER, USDC, "1")
        clock.now += REQUEST_TTL_SECONDS
        assert book.sweep_expired() == 1
        assert count_rows(db) == 2


class TestExpiry:
    def test_lazy_expiry_is_stable(self, book, clock, audit):
        request_id = book.create_or_remind(PAYER, RECIPIENT, USDC, "1").request_id
        clock.now += REQUEST_TTL_SECONDS

        assert book.require(request_id).status == "expired"
        assert book.require(request_id).status == "expired"
        expired = audit.read_events(event_type=EventType.REQUEST_EXPIRED)
        assert [e.request_id for e in expired] == [request_id]

    def test_expired_pair_allows_new_request(self, book, clock):
        first = book.create_or_remind(PAYER, RECIPIENT, USDC, "1")
        clock.now += REQUEST_TTL_SECONDS + 1

        second = book.create_or_remind(PAYER, RECIPIENT, USDC, "1")

        assert not second.is_existing
        assert second.request_id != first.request_id

    def test_listing_applies_expiry(self, book, clock):
        book.create_or_remind(PAYER, RECIPIENT, USDC, "1")
        clock.now += REQUEST_TTL_SECONDS
        assert [r.status for r in book.list_for_wallet(RECIPIENT, "outgoing")] == ["expired"]

    def test_sweep(self, book, clock):
        book.create_or_remind(PAYER, RECIPIENT, USDC, "1")
        book.create_or_remind(RECIPIENT, PAYER, USDC, "1")
        assert book.sweep_expired() == 0

        clock.now += REQUEST_TTL_SECONDS
        assert book.sweep_expired() == 2
        assert book.sweep_expired() == 0


class TestListing:
    def test_directions(self, book):
        a = book.create_or_remind(PAYER, RECIPIENT, USDC, "1").request_id
        b = book.create_or_remind(RECIPIENT, PAYER, USDC, "2").request_id

        assert [r.id for r in book.list_for_wallet(PAYER, "incoming")] == [a]
        assert [r.id for r in book.list_for_wallet(PAYER, "outgoing")] == [b]

    def test_bad_direction(self, book):
        with pytest.raises(ValidationError, match="Invalid type"):
            book.list_for_wallet(PAYER, "sideways")


class TestComplete:
    def test_complete_pending(self, book, clock):
        request_id = book.create_or_remind(PAYER, RECIPIENT, USDC, "1").request_id
        clock.now += 60

        request = book.complete(request_id, TX_HASH)

        assert request.status == "completed"
        assert request.tx_hash == TX_HASH
        assert request.completed_at == clock.now

    def test_complete_twice(self, book):
        request_id = book.create_or_remind(PAYER, RECIPIENT, USDC, "1").request_id
        book.complete(request_id, TX_HASH)
        with pytest.raises(RequestStateError, match="completed"):
            book.complete(request_id, TX_HASH)

    def test_complete_expired(self, book, clock):
        request_id = book.create_or_remind(PAYER, RECIPIENT, USDC, "1").request_id
        clock.now += REQUEST_TTL_SECONDS

        with pytest.raises(RequestStateError, match="expired"):
            book.complete(request_id, TX_HASH)
        # the expiry applied during the failed completion sticks
        assert book.require(request_id).status == "expired"

    def test_complete_missing(self, book):
        with pytest.raises(NotFoundError):
            book.complete("nope", TX_HASH)

    def test_complete_bad_hash(self, book):
        request_id = book.create_or_remind(PAYER, RECIPIENT, USDC, "1").request_id
        with pytest.raises(ValidationError):
            book.complete(request_id, "0x1234")


class TestRemind:
    def test_remind_pending(self, book, notifier):
        request_id = book.create_or_remind(PAYER, RECIPIENT, USDC, "1").request_id
        assert book.remind(request_id)
        assert notifier.sent[-1].title == "Reminder: Payment Request from @someone"

    def test_remind_completed(self, book):
        request_id = book.create_or_remind(PAYER, RECIPIENT, USDC, "1").request_id
        book.complete(request_id, TX_HASH)
        with pytest.raises(RequestStateError):
            book.remind(request_id)
