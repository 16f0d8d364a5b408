"""Event reconciler tests - settlement state machine, idempotency and races"""
import logging
import threading
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from fitmate.models import Base
from fitmate.models.enums import PurchaseStatus, Role
from fitmate.models.user import User
from fitmate.services.checkout_service import initiate_checkout
from fitmate.services.plan_registry import MembershipPlanRegistry
from fitmate.services.purchase_ledger import PurchaseLedger
from fitmate.services.reconciliation_service import EventReconciler, ReconcileOutcome
from fitmate.services.role_service import role_rank
from fitmate.services.stripe_service import ObservedEvent, observed_event_from_session
from fitmate.services.user_service import upgrade_user_role


@pytest.fixture
def reconciler(db_session, fake_gateway):
    return EventReconciler(PurchaseLedger(db_session), fake_gateway)


@pytest.fixture
def checkout(db_session, fake_gateway):
    """checkout(user, role) -> CheckoutResult for that role's plan"""
    def _checkout(user, role=Role.USER_GOLD):
        price_id = MembershipPlanRegistry.find_by_role(role).price_id
        return initiate_checkout(user.id, price_id, db_session, fake_gateway)
    return _checkout


def paid_event(fake_gateway, session_id, amount=129900, currency="thb", source="webhook"):
    session = fake_gateway.complete_payment(session_id, amount, currency)
    return observed_event_from_session(session, source=source)


def user_role(db_session, user_id):
    db_session.expire_all()
    return db_session.query(User).filter(User.id == user_id).first().role


@pytest.mark.critical
class TestSettlement:
    """Happy path and the idempotency gate"""

    def test_paid_event_settles_and_upgrades(self, db_session, reconciler, fake_gateway, test_user, checkout):
        """User checks out Gold, gateway reports paid with matching amount"""
        started = checkout(test_user, Role.USER_GOLD)

        result = reconciler.reconcile(paid_event(fake_gateway, started.session_id))

        assert result.outcome == ReconcileOutcome.SETTLED
        assert result.newly_paid is True
        assert result.newly_upgraded is True
        assert result.settled is True
        assert result.role == "USER_GOLD"
        assert result.mismatches == []
        assert PurchaseLedger(db_session).get(started.purchase_id).status == PurchaseStatus.PAID.value
        assert user_role(db_session, test_user.id) == "USER_GOLD"

    def test_repeat_delivery_is_already_settled(self, reconciler, fake_gateway, test_user, checkout):
        started = checkout(test_user)
        event = paid_event(fake_gateway, started.session_id)

        first = reconciler.reconcile(event)
        second = reconciler.reconcile(event)

        assert first.outcome == ReconcileOutcome.SETTLED
        assert second.outcome == ReconcileOutcome.ALREADY_SETTLED
        assert second.newly_paid is False
        assert second.newly_upgraded is False
        assert second.settled is True
        assert second.role == "USER_GOLD"

    def test_exactly_one_of_many_calls_settles(self, reconciler, fake_gateway, test_user, checkout):
        started = checkout(test_user)
        event = paid_event(fake_gateway, started.session_id)

        outcomes = [reconciler.reconcile(event).outcome for _ in range(5)]

        assert outcomes.count(ReconcileOutcome.SETTLED) == 1
        assert outcomes.count(ReconcileOutcome.ALREADY_SETTLED) == 4

    def test_role_changes_once_and_only_upward(self, db_session, reconciler, fake_gateway, test_user, checkout):
        started = checkout(test_user)
        event = paid_event(fake_gateway, started.session_id)

        upgrades = 0
        for _ in range(3):
            before = user_role(db_session, test_user.id)
            result = reconciler.reconcile(event)
            if result.newly_upgraded:
                upgrades += 1
                assert role_rank(result.role) > role_rank(before)
        assert upgrades == 1

    def test_falls_back_to_purchase_id_from_metadata(self, db_session, reconciler, test_user):
        ledger = PurchaseLedger(db_session)
        purchase = ledger.create_pending(test_user.id, "USER_BRONZE", 49900, "THB")

        result = reconciler.reconcile(ObservedEvent(
            session_id="cs_never_attached", paid=True, amount=49900, currency="THB",
            purchase_id=purchase.id, target_role="USER_BRONZE",
        ))

        assert result.outcome == ReconcileOutcome.SETTLED
        assert ledger.get(purchase.id).external_id == "cs_never_attached"

    def test_role_comes_from_purchase_not_event_metadata(self, db_session, reconciler, fake_gateway, test_user, checkout):
        started = checkout(test_user, Role.USER_BRONZE)
        session = fake_gateway.complete_payment(started.session_id, 49900)
        session["metadata"]["targetRole"] = "ADMIN"

        result = reconciler.reconcile(observed_event_from_session(session, source="webhook"))

        assert result.role == "USER_BRONZE"
        assert user_role(db_session, test_user.id) == "USER_BRONZE"


@pytest.mark.critical
class TestNonSettlingEvents:
    """Events that must not write anything"""

    def test_unknown_session_is_unresolved_with_zero_writes(self, reconciler, test_user, sql_writes):
        result = reconciler.reconcile(ObservedEvent(
            session_id="cs_foreign", paid=True, amount=129900, currency="THB"
        ))

        assert result.outcome == ReconcileOutcome.UNRESOLVED
        assert result.purchase_id is None
        assert sql_writes == []

    def test_unknown_purchase_id_is_unresolved(self, reconciler, sql_writes):
        result = reconciler.reconcile(ObservedEvent(
            session_id="cs_foreign", paid=True, purchase_id="no-such-purchase"
        ))
        assert result.outcome == ReconcileOutcome.UNRESOLVED
        assert sql_writes == []

    def test_unpaid_session_is_not_paid(self, db_session, reconciler, fake_gateway, test_user, checkout, sql_writes):
        started = checkout(test_user)
        sql_writes.clear()

        result = reconciler.reconcile_session(started.session_id)

        assert result.outcome == ReconcileOutcome.NOT_PAID
        assert result.purchase_status == PurchaseStatus.PENDING.value
        assert result.settled is False
        assert result.role == "USER"
        assert sql_writes == []

    def test_complete_but_processing_payment_is_not_paid(self, reconciler, fake_gateway, test_user, checkout):
        started = checkout(test_user)
        fake_gateway.sessions[started.session_id].update(status="complete", payment_status="unpaid")

        result = reconciler.reconcile_session(started.session_id)
        assert result.outcome == ReconcileOutcome.NOT_PAID


@pytest.mark.critical
class TestRaces:
    """Webhook and verify delivering the same payment at the same time"""

    def test_interleaved_webhook_and_verify(self, db_session, fake_gateway, test_user, checkout):
        started = checkout(test_user)
        webhook_event = paid_event(fake_gateway, started.session_id, source="webhook")
        verify_event = observed_event_from_session(fake_gateway.sessions[started.session_id], source="verify")

        webhook = EventReconciler(PurchaseLedger(db_session), fake_gateway)
        verify = EventReconciler(PurchaseLedger(db_session), fake_gateway)
        original_mark_paid = PurchaseLedger.mark_paid
        state = {"raced": False}
        results = {}

        def verify_wins_the_race(self, *args, **kwargs):
            # The webhook has passed its idempotency gate; verify runs to completion first
            if not state["raced"]:
                state["raced"] = True
                results["verify"] = verify.reconcile(verify_event)
            return original_mark_paid(self, *args, **kwargs)

        with patch.object(PurchaseLedger, "mark_paid", autospec=True, side_effect=verify_wins_the_race):
            results["webhook"] = webhook.reconcile(webhook_event)

        assert results["verify"].outcome == ReconcileOutcome.SETTLED
        assert results["webhook"].outcome == ReconcileOutcome.ALREADY_SETTLED
        assert results["verify"].settled and results["webhook"].settled
        assert results["verify"].newly_upgraded is True
        assert results["webhook"].newly_upgraded is False
        assert user_role(db_session, test_user.id) == "USER_GOLD"

    def test_lost_race_on_role_upgrade_is_not_an_error(self, db_session, reconciler, fake_gateway, test_user, checkout):
        started = checkout(test_user)
        event = paid_event(fake_gateway, started.session_id)

        def someone_else_upgrades_first(user_id, target_role, db):
            upgrade_user_role(user_id, target_role, db)
            return upgrade_user_role(user_id, target_role, db)

        with patch("fitmate.services.reconciliation_service.upgrade_user_role", side_effect=someone_else_upgrades_first):
            result = reconciler.reconcile(event)

        assert result.outcome == ReconcileOutcome.SETTLED
        assert result.newly_upgraded is False
        assert result.role == "USER_GOLD"


@pytest.mark.high
class TestUpgradeRules:
    """Monotonic role changes"""

    def test_never_downgrades(self, db_session, reconciler, fake_gateway, test_user, checkout):
        """Admin raised the user to Platinum while a Gold checkout was open"""
        started = checkout(test_user, Role.USER_GOLD)
        db_session.query(User).filter(User.id == test_user.id).update({User.role: "USER_PLATINUM"})
        db_session.commit()

        result = reconciler.reconcile(paid_event(fake_gateway, started.session_id))

        assert result.outcome == ReconcileOutcome.SETTLED
        assert result.newly_upgraded is False
        assert result.role == "USER_PLATINUM"
        assert user_role(db_session, test_user.id) == "USER_PLATINUM"

    def test_later_lower_purchase_does_not_undo_higher_one(self, db_session, reconciler, fake_gateway, test_user, checkout):
        bronze = checkout(test_user, Role.USER_BRONZE)
        platinum = checkout(test_user, Role.USER_PLATINUM)

        reconciler.reconcile(paid_event(fake_gateway, platinum.session_id, amount=299900))
        result = reconciler.reconcile(paid_event(fake_gateway, bronze.session_id, amount=49900))

        assert result.outcome == ReconcileOutcome.SETTLED
        assert result.newly_upgraded is False
        assert user_role(db_session, test_user.id) == "USER_PLATINUM"

    def test_staff_roles_are_untouched(self, db_session, reconciler, make_user):
        trainer = make_user(Role.TRAINER)
        ledger = PurchaseLedger(db_session)
        purchase = ledger.create_pending(trainer.id, "USER_GOLD", 129900, "THB")
        ledger.attach_external_id(purchase.id, "cs_trainer")

        result = reconciler.reconcile(ObservedEvent(session_id="cs_trainer", paid=True, amount=129900, currency="THB"))

        assert result.newly_upgraded is False
        assert user_role(db_session, trainer.id) == "TRAINER"


@pytest.mark.high
class TestCrossCheck:
    """Amount/currency mismatches are advisory"""

    def test_amount_mismatch_still_settles(self, db_session, reconciler, fake_gateway, test_user, checkout, caplog):
        started = checkout(test_user)

        with caplog.at_level(logging.WARNING, logger="payments"):
            result = reconciler.reconcile(paid_event(fake_gateway, started.session_id, amount=100))

        assert result.outcome == ReconcileOutcome.SETTLED
        assert result.newly_upgraded is True
        assert result.mismatches == ["amount"]
        assert "Amount mismatch" in caplog.text
        # Gateway-reported amount is what gets recorded
        assert PurchaseLedger(db_session).get(started.purchase_id).amount == 100

    def test_currency_mismatch_still_settles(self, reconciler, fake_gateway, test_user, checkout):
        started = checkout(test_user)
        result = reconciler.reconcile(paid_event(fake_gateway, started.session_id, currency="usd"))
        assert result.outcome == ReconcileOutcome.SETTLED
        assert result.mismatches == ["currency"]

    def test_currency_case_is_ignored(self, reconciler, fake_gateway, test_user, checkout):
        started = checkout(test_user)
        result = reconciler.reconcile(paid_event(fake_gateway, started.session_id, currency="thb"))
        assert result.mismatches == []


@pytest.mark.critical
class TestFailureAndRepair:
    """Transient failures and upgrade repair"""

    def test_storage_failure_on_settle_is_transient(self, db_session, reconciler, fake_gateway, test_user, checkout):
        started = checkout(test_user)
        event = paid_event(fake_gateway, started.session_id)

        with patch.object(PurchaseLedger, "mark_paid", side_effect=OperationalError("UPDATE", {}, Exception("db gone"))):
            result = reconciler.reconcile(event)

        assert result.outcome == ReconcileOutcome.TRANSIENT_FAILURE
        assert result.is_transient
        assert "db gone" in result.error
        assert PurchaseLedger(db_session).get(started.purchase_id).status == PurchaseStatus.PENDING.value
        assert user_role(db_session, test_user.id) == "USER"

        retry = reconciler.reconcile(event)
        assert retry.outcome == ReconcileOutcome.SETTLED
        assert retry.newly_upgraded is True

    def test_crash_between_settle_and_upgrade_is_repaired_by_verify(self, db_session, reconciler, fake_gateway, test_user, checkout):
        """Purchase is PAID but the upgrade never landed; the next verify call applies it"""
        started = checkout(test_user)
        event = paid_event(fake_gateway, started.session_id)
        calls = {"n": 0}

        def crash_once(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("UPDATE users", {}, Exception("connection lost"))
            return upgrade_user_role(*args, **kwargs)

        with patch("fitmate.services.reconciliation_service.upgrade_user_role", side_effect=crash_once):
            crashed = reconciler.reconcile(event)
            assert crashed.outcome == ReconcileOutcome.TRANSIENT_FAILURE
            assert PurchaseLedger(db_session).get(started.purchase_id).status == PurchaseStatus.PAID.value
            assert user_role(db_session, test_user.id) == "USER"

            repaired = reconciler.reconcile_session(started.session_id)

        assert repaired.outcome == ReconcileOutcome.ALREADY_SETTLED
        assert repaired.newly_paid is False
        assert repaired.newly_upgraded is True
        assert repaired.role == "USER_GOLD"
        assert user_role(db_session, test_user.id) == "USER_GOLD"

    def test_deleted_user_does_not_break_settlement(self, db_session, reconciler, fake_gateway, test_user, checkout):
        started = checkout(test_user)
        event = paid_event(fake_gateway, started.session_id)

        with patch("fitmate.services.reconciliation_service.get_user_by_id", return_value=None):
            result = reconciler.reconcile(event)

        assert result.outcome == ReconcileOutcome.SETTLED
        assert result.newly_upgraded is False
        assert result.role is None


@pytest.mark.medium
class TestClose:
    """Expired and failed checkouts"""

    def test_expired_session_cancels_pending_purchase(self, db_session, reconciler, fake_gateway, test_user, checkout):
        started = checkout(test_user)
        event = observed_event_from_session(fake_gateway.sessions[started.session_id], source="webhook")

        result = reconciler.close(event, PurchaseStatus.CANCELED)

        assert result.outcome == ReconcileOutcome.NOT_PAID
        assert result.purchase_status == PurchaseStatus.CANCELED.value
        assert user_role(db_session, test_user.id) == "USER"

    def test_close_after_paid_keeps_paid(self, reconciler, fake_gateway, test_user, checkout):
        started = checkout(test_user)
        event = paid_event(fake_gateway, started.session_id)
        reconciler.reconcile(event)

        result = reconciler.close(event, PurchaseStatus.FAILED)

        assert result.outcome == ReconcileOutcome.ALREADY_SETTLED
        assert result.purchase_status == PurchaseStatus.PAID.value

    def test_close_unknown_session(self, reconciler):
        result = reconciler.close(ObservedEvent(session_id="cs_foreign", paid=False), PurchaseStatus.CANCELED)
        assert result.outcome == ReconcileOutcome.UNRESOLVED

    @pytest.mark.parametrize("closed_as", [PurchaseStatus.CANCELED, PurchaseStatus.FAILED])
    def test_paid_event_after_close_does_not_settle(self, db_session, reconciler, fake_gateway, test_user, checkout, caplog, closed_as):
        started = checkout(test_user)
        reconciler.close(
            observed_event_from_session(fake_gateway.sessions[started.session_id], source="webhook"), closed_as
        )

        with caplog.at_level(logging.ERROR, logger="payments"):
            result = reconciler.reconcile(paid_event(fake_gateway, started.session_id))

        assert result.outcome == ReconcileOutcome.NOT_PAID
        assert result.purchase_status == closed_as.value
        assert result.settled is False
        assert result.newly_paid is False
        assert result.newly_upgraded is False
        assert result.role == "USER"
        assert "needs manual follow-up" in caplog.text
        assert PurchaseLedger(db_session).get(started.purchase_id).status == closed_as.value
        assert user_role(db_session, test_user.id) == "USER"

    def test_close_landing_before_paid_write_wins(self, db_session, reconciler, fake_gateway, test_user, checkout, caplog):
        """Expiry is recorded between the idempotency gate and the PAID write"""
        started = checkout(test_user)
        event = paid_event(fake_gateway, started.session_id)
        original_mark_paid = PurchaseLedger.mark_paid

        def expired_first(self, purchase_id, *args, **kwargs):
            self.close(purchase_id, PurchaseStatus.CANCELED)
            return original_mark_paid(self, purchase_id, *args, **kwargs)

        with caplog.at_level(logging.ERROR, logger="payments"):
            with patch.object(PurchaseLedger, "mark_paid", autospec=True, side_effect=expired_first):
                result = reconciler.reconcile(event)

        assert result.outcome == ReconcileOutcome.NOT_PAID
        assert result.purchase_status == PurchaseStatus.CANCELED.value
        assert result.newly_upgraded is False
        assert "needs manual follow-up" in caplog.text
        assert user_role(db_session, test_user.id) == "USER"


@pytest.mark.critical
class TestConcurrentSettlement:
    """Real threads, one Session each, delivering the same paid event"""

    def test_concurrent_deliveries_settle_once(self, tmp_path):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'concurrent.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(bind=engine)
        SessionFactory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

        setup = SessionFactory()
        user = User(email="racer@fitmate.test", name="Racer", role=Role.USER.value)
        setup.add(user)
        setup.commit()
        ledger = PurchaseLedger(setup)
        purchase = ledger.create_pending(user.id, Role.USER_GOLD.value, 129900, "THB")
        ledger.attach_external_id(purchase.id, "cs_concurrent")
        user_id, purchase_id = user.id, purchase.id
        setup.close()

        event = ObservedEvent(session_id="cs_concurrent", paid=True, amount=129900, currency="THB")
        workers = 8
        barrier = threading.Barrier(workers)
        results, errors = [], []

        def deliver():
            db = SessionFactory()
            try:
                barrier.wait()
                results.append(EventReconciler(PurchaseLedger(db)).reconcile(event))
            except Exception as e:
                errors.append(e)
            finally:
                db.close()

        threads = [threading.Thread(target=deliver) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        try:
            assert errors == []
            outcomes = [r.outcome for r in results]
            assert outcomes.count(ReconcileOutcome.SETTLED) == 1
            assert outcomes.count(ReconcileOutcome.ALREADY_SETTLED) == workers - 1
            assert sum(r.newly_upgraded for r in results) == 1
            assert all(r.settled for r in results)

            check = SessionFactory()
            assert check.query(User).filter(User.id == user_id).first().role == "USER_GOLD"
            assert PurchaseLedger(check).get(purchase_id).status == PurchaseStatus.PAID.value
            check.close()
        finally:
            engine.dispose()
