"""Tests for EA authentication, heartbeats and liveness."""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from copyhub import settings
from copyhub.errors import AuthenticationFailure, AccountDisabled, NotFound
from copyhub.models import AccountStatus, AccountRole, Command, CommandStatus, utcnow
from copyhub.schemas import HeartbeatIn
from copyhub.services import accounts, commands


class TestAuthenticate:
    def test_valid_token(self, db, make_account):
        account = make_account()
        assert accounts.authenticate(db, account.ea_token).id == account.id

    @pytest.mark.parametrize("token", [None, "", "   ", "not-a-token"])
    def test_missing_or_unknown_token(self, db, make_account, token):
        """Missing and unknown tokens are both authentication failures."""
        make_account()
        with pytest.raises(AuthenticationFailure):
            accounts.authenticate(db, token)

    @pytest.mark.parametrize("status", [AccountStatus.SUSPENDED, AccountStatus.INACTIVE])
    def test_disabled_account(self, db, make_account, status):
        account = make_account(status=status)
        with pytest.raises(AccountDisabled):
            accounts.authenticate(db, account.ea_token)

    def test_inactive_owner(self, db, make_user, make_account):
        """A valid token of a deactivated user is refused."""
        make_user("gone", is_active=False)
        account = make_account(username="gone")
        with pytest.raises(AccountDisabled):
            accounts.authenticate(db, account.ea_token)

    def test_offline_account_may_authenticate(self, db, make_account):
        """Offline only means the heartbeat is late; the EA must still get through."""
        account = make_account(status=AccountStatus.OFFLINE)
        assert accounts.authenticate(db, account.ea_token).id == account.id


class TestHeartbeat:
    def test_records_metrics(self, db, make_account):
        account = make_account(heartbeat=False)
        hb = HeartbeatIn.model_validate({
            "balance": 5000, "equity": 5100.5, "margin": 20, "freeMargin": 5080.5, "marginLevel": 25502.5,
            "openTrades": [{"ticket": 1, "symbol": "EURUSD"}, {"ticket": 2, "symbol": "GBPUSD"}],
            "eaVersion": "2.1.0",
        })
        assert accounts.record_heartbeat(db, account, hb) == AccountStatus.ACTIVE

        db.expire_all()
        assert account.balance == 5000
        assert account.free_margin == 5080.5
        assert account.open_trades == 2
        assert account.ea_version == "2.1.0"
        assert account.last_heartbeat is not None

    def test_revives_offline_account(self, db, make_account):
        account = make_account(status=AccountStatus.OFFLINE)
        assert accounts.record_heartbeat(db, account, HeartbeatIn()) == AccountStatus.ACTIVE
        db.expire_all()
        assert account.status == AccountStatus.ACTIVE

    def test_write_failure_still_answers(self, db, make_account, monkeypatch):
        """A failed metrics write is rolled back and the caller still gets a status."""
        account = make_account()

        def broken_commit():
            raise OperationalError("UPDATE trading_accounts", {}, Exception("database is locked"))

        monkeypatch.setattr(db, "commit", broken_commit)
        assert accounts.record_heartbeat(db, account, HeartbeatIn(balance=1)) == AccountStatus.ACTIVE

    def test_applies_command_acks(self, db, make_account):
        """executedCommands in a heartbeat resolve the listed commands."""
        account = make_account()
        other = make_account()
        mine = commands.enqueue(db, account.id, Command(command_type="BUY", symbol="EURUSD", volume=0.1))
        foreign = commands.enqueue(db, other.id, Command(command_type="BUY", symbol="EURUSD", volume=0.1))

        hb = HeartbeatIn.model_validate({"executedCommands": [
            {"commandId": str(mine.id), "status": "success", "orderTicket": 555},
            {"commandId": str(foreign.id), "status": "success"},
            {"commandId": "missing", "status": "failed"},
        ]})
        accounts.record_heartbeat(db, account, hb)

        db.expire_all()
        assert mine.status == CommandStatus.EXECUTED
        assert mine.execution_result["orderTicket"] == 555
        assert foreign.status == CommandStatus.PENDING

    def test_malformed_items_are_dropped(self):
        """Bad positions and acks are dropped one by one; the rest of the snapshot stays."""
        hb = HeartbeatIn.model_validate({
            "balance": 5000,
            "openTrades": [{"ticket": 1, "symbol": "EURUSD", "profit": None}, {"symbol": "GBPUSD"}],
            "executedCommands": [{"commandId": "c-1", "status": "success"}, {"commandId": "c-2", "status": "done"}],
        })
        assert hb.balance == 5000
        assert [t.ticket for t in hb.open_trades] == [1]
        assert [a.command_id for a in hb.executed_commands] == ["c-1"]
        assert hb.snapshot_complete is False

    @pytest.mark.parametrize("body, complete", [
        ({"openTrades": []}, True),
        ({"openTrades": [{"ticket": 1}]}, True),
        ({}, False),
        ({"openTrades": "none"}, False),
    ])
    def test_snapshot_complete(self, body, complete):
        assert HeartbeatIn.model_validate(body).snapshot_complete is complete

    def test_liveness_without_metrics(self, db, make_account):
        account = make_account(heartbeat=False, balance=777.0)
        assert accounts.record_liveness(db, account) == AccountStatus.ACTIVE
        db.expire_all()
        assert account.last_heartbeat is not None
        assert account.balance == 777.0


class TestLiveness:
    def test_effective_status(self, make_account):
        account = make_account()
        now = utcnow()
        assert accounts.effective_status(account, now) == AccountStatus.ACTIVE
        late = now + timedelta(seconds=settings.HEARTBEAT_TIMEOUT_SECONDS + 1)
        assert accounts.effective_status(account, late) == AccountStatus.OFFLINE

    def test_effective_status_keeps_suspension(self, make_account):
        account = make_account(status=AccountStatus.SUSPENDED, heartbeat=False)
        assert accounts.effective_status(account) == AccountStatus.SUSPENDED

    def test_mark_stale_offline(self, db, make_account):
        fresh = make_account()
        stale = make_account()
        stale.last_heartbeat = utcnow() - timedelta(minutes=10)
        db.commit()

        assert accounts.mark_stale_offline(db) == 1
        db.expire_all()
        assert stale.status == AccountStatus.OFFLINE
        assert fresh.status == AccountStatus.ACTIVE

    def test_mark_offline(self, db, make_account):
        account = make_account()
        assert accounts.mark_offline(db, account.id)
        assert not accounts.mark_offline(db, account.id)


class TestRegistration:
    def test_regenerate_token_invalidates_old(self, db, make_user):
        user = make_user("owner")
        account = accounts.register_account(db, user, "Main", "5012345", AccountRole.MASTER)
        old = account.ea_token

        new = accounts.regenerate_token(db, account.id)
        assert new != old
        with pytest.raises(AuthenticationFailure):
            accounts.authenticate(db, old)
        assert accounts.authenticate(db, new).id == account.id

    def test_regenerate_unknown(self, db):
        with pytest.raises(NotFound):
            accounts.regenerate_token(db, "0b7c1f2e-0000-4000-8000-000000000000")
