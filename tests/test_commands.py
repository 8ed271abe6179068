"""Tests for the command queue: polling, repair, status callbacks, cancel, expiry."""

from datetime import timedelta

import pytest

from copyhub import settings
from copyhub.errors import NotFound, OwnershipViolation, InvalidState, ValidationFailure
from copyhub.models import Command, CommandStatus, MasterTradeSignal, utcnow
from copyhub.services import commands


def buy(**kwargs):
    kwargs.setdefault("symbol", "EURUSD")
    kwargs.setdefault("volume", 0.1)
    return Command(command_type="BUY", **kwargs)


class TestPoll:
    def test_priority_then_age(self, db, make_account):
        """Higher priority first, then oldest first."""
        account = make_account()
        now = utcnow()
        old_low = commands.enqueue(db, account.id, buy(priority=5), now=now - timedelta(seconds=30))
        new_high = commands.enqueue(db, account.id, buy(priority=9), now=now)
        old_high = commands.enqueue(db, account.id, buy(priority=9), now=now - timedelta(seconds=10))

        assert [c.id for c in commands.poll(db, account.id)] == [old_high.id, new_high.id, old_low.id]

    def test_only_own_pending_unexpired(self, db, make_account):
        account = make_account()
        other = make_account()
        mine = commands.enqueue(db, account.id, buy())
        commands.enqueue(db, other.id, buy())
        done = commands.enqueue(db, account.id, buy())
        commands.cancel(db, done.id)
        commands.enqueue(db, account.id, buy(expires_at=utcnow() - timedelta(minutes=1)))

        assert [c.id for c in commands.poll(db, account.id)] == [mine.id]

    def test_limit(self, db, make_account):
        account = make_account()
        for _ in range(settings.POLL_MAX_LIMIT + 5):
            commands.enqueue(db, account.id, buy(), commit=False)
        db.commit()

        assert len(commands.poll(db, account.id, limit=3)) == 3
        assert len(commands.poll(db, account.id)) == settings.POLL_DEFAULT_LIMIT
        assert len(commands.poll(db, account.id, limit=1000)) == settings.POLL_MAX_LIMIT

    def test_polling_does_not_consume(self, db, make_account):
        """Delivery is at-least-once: a second poll sees the same command."""
        account = make_account()
        cmd = commands.enqueue(db, account.id, buy())
        assert [c.id for c in commands.poll(db, account.id)] == [cmd.id]
        assert [c.id for c in commands.poll(db, account.id)] == [cmd.id]

    @pytest.mark.parametrize("comment,expected", [
        ("CH1|5012345|1001|C", 1001),
        ("COPY|MASTER_TICKET|2002|Close", 2002),
        ("Copy from Master #5012345 Ticket #3003", 3003),
    ])
    def test_repairs_master_ticket(self, db, make_account, comment, expected):
        """A missing master ticket is recovered from the comment and persisted."""
        account = make_account()
        cmd = commands.enqueue(db, account.id, Command(command_type="CLOSE", symbol="EURUSD", master_ticket=0,
                                                       comment=comment))

        [polled] = commands.poll(db, account.id)
        assert polled.master_ticket == expected

        db.expire_all()
        assert db.get(Command, cmd.id).master_ticket == expected

    def test_unrepairable_comment_left_alone(self, db, make_account):
        account = make_account()
        commands.enqueue(db, account.id, Command(command_type="CLOSE", symbol="EURUSD", comment="manual"))
        [polled] = commands.poll(db, account.id)
        assert polled.master_ticket is None


class TestUpdateStatus:
    def test_owner_resolves(self, db, make_account):
        account = make_account()
        cmd = commands.enqueue(db, account.id, buy())
        updated, applied = commands.update_status(db, cmd.id, account.id, "executed", {"orderTicket": 7001})
        assert applied
        assert updated.status == CommandStatus.EXECUTED
        assert updated.executed_at is not None
        assert updated.execution_result == {"orderTicket": 7001}

    def test_non_owner_rejected(self, db, make_account):
        """Another account's EA cannot touch the command; status stays pending."""
        account = make_account()
        intruder = make_account()
        cmd = commands.enqueue(db, account.id, buy())
        with pytest.raises(OwnershipViolation):
            commands.update_status(db, cmd.id, intruder.id, "executed")
        db.expire_all()
        assert db.get(Command, cmd.id).status == CommandStatus.PENDING

    def test_unknown_command(self, db, make_account):
        account = make_account()
        with pytest.raises(NotFound):
            commands.update_status(db, "7a0f3c36-1111-4111-8111-111111111111", account.id, "executed")
        with pytest.raises(NotFound):
            commands.update_status(db, "garbage", account.id, "executed")

    def test_invalid_status(self, db, make_account):
        account = make_account()
        cmd = commands.enqueue(db, account.id, buy())
        with pytest.raises(ValidationFailure):
            commands.update_status(db, cmd.id, account.id, "expired")

    def test_second_callback_is_ignored(self, db, make_account):
        """Executed then failed: the first outcome and its timestamp are kept."""
        account = make_account()
        cmd = commands.enqueue(db, account.id, buy())
        first, _ = commands.update_status(db, cmd.id, account.id, "executed", {"orderTicket": 1})
        executed_at = first.executed_at

        again, applied = commands.update_status(db, cmd.id, account.id, "executed", {"orderTicket": 2})
        assert not applied
        late, applied = commands.update_status(db, cmd.id, account.id, "failed", {"error": "timeout"})
        assert not applied

        db.expire_all()
        stored = db.get(Command, cmd.id)
        assert stored.status == CommandStatus.EXECUTED
        assert stored.execution_result == {"orderTicket": 1}
        assert stored.executed_at == executed_at

    def test_counts_executed_copies(self, db, make_account):
        master = make_account()
        slave = make_account()
        signal = MasterTradeSignal(master_account_id=master.id, master_ticket=1001, symbol="EURUSD",
                                   order_type="BUY", volume=1.0, event_type="OPEN", status="processed")
        db.add(signal)
        db.commit()
        cmd = commands.enqueue(db, slave.id, buy(signal_id=signal.id, master_ticket=1001))

        commands.update_status(db, cmd.id, slave.id, "executed")
        commands.update_status(db, cmd.id, slave.id, "executed")
        db.expire_all()
        assert signal.commands_executed == 1


class TestCancelAndExpire:
    def test_cancel_pending(self, db, make_account):
        account = make_account()
        cmd = commands.enqueue(db, account.id, buy())
        assert commands.cancel(db, cmd.id).status == CommandStatus.EXPIRED

    def test_cancel_resolved(self, db, make_account):
        account = make_account()
        cmd = commands.enqueue(db, account.id, buy())
        commands.update_status(db, cmd.id, account.id, "failed")
        with pytest.raises(InvalidState):
            commands.cancel(db, cmd.id)

    def test_cancel_unknown(self, db):
        with pytest.raises(NotFound):
            commands.cancel(db, "garbage")

    def test_expire_stale(self, db, make_account):
        account = make_account()
        now = utcnow()
        stale = commands.enqueue(db, account.id, buy(), now=now - timedelta(hours=settings.COMMAND_TTL_HOURS + 1))
        fresh = commands.enqueue(db, account.id, buy(), now=now)

        assert commands.expire_stale(db, now) == 1
        db.expire_all()
        assert stale.status == CommandStatus.EXPIRED
        assert fresh.status == CommandStatus.PENDING

    def test_priority_is_clamped(self, db, make_account):
        account = make_account()
        assert commands.enqueue(db, account.id, buy(priority=50)).priority == 10
        assert commands.enqueue(db, account.id, buy(priority=-3)).priority == 1


class TestManual:
    def test_requires_fields(self, db, make_account):
        account = make_account()
        with pytest.raises(ValidationFailure):
            commands.create_manual(db, account.id, {"command_type": "BUY", "symbol": "EURUSD"})
        with pytest.raises(ValidationFailure):
            commands.create_manual(db, account.id, {"command_type": "CLOSE"})
        with pytest.raises(ValidationFailure):
            commands.create_manual(db, account.id, {"command_type": "BUY", "symbol": "EURUSD", "volume": 0.1,
                                                    "order_type": "LIMIT"})

    def test_close_all(self, db, make_account):
        account = make_account()
        cmd = commands.create_manual(db, account.id, {"command_type": "CLOSE_ALL"})
        assert cmd.source_type == "manual"
        assert cmd.status == CommandStatus.PENDING
