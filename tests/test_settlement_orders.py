"""Tests for order settlement (app/services/settlement.py: settle_order)"""
import threading

import pytest
from unittest.mock import patch

from app.models import ActivityLog, Course, Enrollment, AccessType, Payment, Purchase, PurchaseStatus
from app.services import ledger
from app.services.settlement import CaptureOutcome, settle_order


COMPLETED = CaptureOutcome(status="COMPLETED", capture_id="CAP123")


@pytest.fixture
def notifications():
    with patch("app.services.settlement.notifications") as mock_notifications:
        yield mock_notifications


@pytest.fixture
def analytics():
    with patch("app.services.settlement.analytics") as mock_analytics:
        yield mock_analytics


class TestCaptureOutcome:
    def test_completed_is_success(self):
        assert CaptureOutcome("COMPLETED", "CAP1").succeeded is True

    def test_other_status_is_failure(self):
        assert CaptureOutcome("DECLINED").succeeded is False

    def test_from_order_reads_first_capture(self):
        order = {
            "id": "ORDER-1",
            "status": "COMPLETED",
            "purchase_units": [{"payments": {"captures": [{"id": "CAP9", "status": "COMPLETED"}]}}],
        }
        outcome = CaptureOutcome.from_order(order)
        assert outcome.succeeded
        assert outcome.capture_id == "CAP9"

    def test_from_order_without_captures(self):
        outcome = CaptureOutcome.from_order({"id": "ORDER-1", "status": "PAYER_ACTION_REQUIRED"})
        assert outcome.capture_id is None
        assert not outcome.succeeded


class TestSingleCourseHappyPath:
    def test_settles_purchase_enrollment_and_payment(self, db, factory, notifications, analytics):
        user = factory.user(email="buyer@test.com")
        course = factory.course(price_cents=19900)
        purchase = factory.purchase(user, course, provider_ref="ORDER-1")

        result = settle_order(db, "ORDER-1", COMPLETED)

        assert result.ok
        assert result.settled == [purchase.id]

        db.expire_all()
        assert db.get(Purchase, purchase.id).status == PurchaseStatus.PAID

        payments = db.query(Payment).all()
        assert len(payments) == 1
        assert payments[0].provider_ref == "CAP123"
        assert payments[0].amount_cents == 19900
        assert payments[0].purchase_id == purchase.id

        enrollment = ledger.find_enrollment(db, user.id, course.id)
        assert enrollment.access_type == AccessType.PURCHASED
        assert enrollment.purchase_id == purchase.id
        assert enrollment.expires_at is None

    def test_post_commit_side_effects(self, db, factory, notifications, analytics):
        user = factory.user(email="buyer@test.com")
        course = factory.course(price_cents=19900)
        factory.purchase(user, course)

        settle_order(db, "ORDER-1", COMPLETED)

        notifications.send_purchase_confirmation.assert_called_once_with(
            "buyer@test.com", course.title, 19900, "usd"
        )
        notifications.send_enrollment_email.assert_called_once_with("buyer@test.com", course.title)
        analytics.track.assert_called_once()
        assert analytics.track.call_args[0][0] == "purchase"

        activity = db.query(ActivityLog).all()
        assert len(activity) == 1
        assert activity[0].type == "purchase_completed"
        assert activity[0].user_id == user.id

    def test_order_ref_used_when_no_capture_id(self, db, factory, notifications, analytics):
        user = factory.user()
        course = factory.course()
        factory.purchase(user, course, provider_ref="ORDER-7")

        settle_order(db, "ORDER-7", CaptureOutcome(status="COMPLETED"))

        assert db.query(Payment).one().provider_ref == "ORDER-7"


class TestIdempotence:
    def test_double_settlement_applies_once(self, db, factory, notifications, analytics):
        user = factory.user()
        course = factory.course(inventory=5)
        purchase = factory.purchase(user, course)

        first = settle_order(db, "ORDER-1", COMPLETED)
        second = settle_order(db, "ORDER-1", COMPLETED)

        assert first.settled == [purchase.id]
        assert second.settled == []
        assert second.already_paid == [purchase.id]
        assert db.query(Payment).count() == 1
        assert db.query(Enrollment).count() == 1
        db.expire_all()
        assert db.get(Course, course.id).inventory == 4
        assert notifications.send_purchase_confirmation.call_count == 1

    def test_stale_pending_read_applies_nothing(self, session_factory, factory, notifications, analytics):
        user = factory.user()
        course = factory.course(inventory=3)
        purchase = factory.purchase(user, course)

        redirect_session = session_factory()
        webhook_session = session_factory()
        try:
            # The redirect path has already read the purchase as pending
            stale = ledger.find_purchases_by_provider_ref(redirect_session, "ORDER-1")
            assert stale[0].status == PurchaseStatus.PENDING

            # ...when the webhook path settles and commits
            assert settle_order(webhook_session, "ORDER-1", COMPLETED).settled == [purchase.id]

            result = settle_order(redirect_session, "ORDER-1", COMPLETED)
            assert result.settled == []
            assert result.already_paid == [purchase.id]
        finally:
            redirect_session.close()
            webhook_session.close()

        check = session_factory()
        try:
            assert check.query(Payment).count() == 1
            assert check.query(Enrollment).count() == 1
            assert check.get(Course, course.id).inventory == 2
        finally:
            check.close()


def _settle_concurrently(session_factory, calls):
    """Run settle_order calls on separate threads and sessions, released together."""
    barrier = threading.Barrier(len(calls))
    results, errors = [], []

    def worker(provider_ref, outcome):
        session = session_factory()
        try:
            barrier.wait(timeout=5)
            results.append(settle_order(session, provider_ref, outcome))
        except Exception as e:
            errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=worker, args=call) for call in calls]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results, errors


class TestConcurrentSettlement:
    def test_concurrent_double_settlement_applies_once(self, session_factory, factory, notifications, analytics):
        user = factory.user()
        course = factory.course(inventory=5)
        purchase = factory.purchase(user, course, provider_ref="ORDER-1")

        results, errors = _settle_concurrently(
            session_factory, [("ORDER-1", COMPLETED), ("ORDER-1", COMPLETED)]
        )

        assert errors == []
        assert sorted(len(r.settled) for r in results) == [0, 1]
        check = session_factory()
        try:
            assert check.query(Payment).count() == 1
            assert check.query(Enrollment).count() == 1
            assert check.get(Course, course.id).inventory == 4
            assert check.get(Purchase, purchase.id).status == PurchaseStatus.PAID
        finally:
            check.close()

    def test_concurrent_buyers_of_last_unit(self, session_factory, factory, notifications, analytics):
        course = factory.course(inventory=1)
        first = factory.purchase(factory.user(), course, provider_ref="ORDER-A")
        second = factory.purchase(factory.user(), course, provider_ref="ORDER-B")

        results, errors = _settle_concurrently(
            session_factory,
            [("ORDER-A", COMPLETED), ("ORDER-B", CaptureOutcome("COMPLETED", "CAP456"))],
        )

        assert errors == []
        assert sum(len(r.out_of_stock) for r in results) == 1
        check = session_factory()
        try:
            statuses = sorted(check.get(Purchase, p.id).status.value for p in (first, second))
            assert statuses == ["paid", "pending"]
            assert check.query(Enrollment).count() == 1
            assert check.query(Payment).count() == 1
            assert check.get(Course, course.id).inventory == 0
        finally:
            check.close()


class TestInventory:
    def test_inventory_floor(self, db, factory, notifications, analytics):
        course = factory.course(inventory=1)
        first_buyer = factory.user(email="first@test.com")
        second_buyer = factory.user(email="second@test.com")
        first = factory.purchase(first_buyer, course, provider_ref="ORDER-A")
        second = factory.purchase(second_buyer, course, provider_ref="ORDER-B")

        result_a = settle_order(db, "ORDER-A", COMPLETED)
        result_b = settle_order(db, "ORDER-B", CaptureOutcome("COMPLETED", "CAP456"))

        assert result_a.settled == [first.id]
        assert result_b.out_of_stock == [second.id]
        assert not result_b.ok

        db.expire_all()
        assert db.get(Course, course.id).inventory == 0
        assert db.get(Purchase, second.id).status == PurchaseStatus.PENDING
        assert ledger.find_enrollment(db, second_buyer.id, course.id) is None
        assert db.query(Payment).filter(Payment.purchase_id == second.id).count() == 0
        notifications.send_out_of_stock.assert_called_once_with("second@test.com", course.title)

    def test_unlimited_inventory_untouched(self, db, factory, notifications, analytics):
        user = factory.user()
        course = factory.course(inventory=None)
        factory.purchase(user, course)

        settle_order(db, "ORDER-1", COMPLETED)

        db.expire_all()
        assert db.get(Course, course.id).inventory is None


class TestUnknownAndFailed:
    def test_unknown_ref_writes_nothing(self, db, factory, notifications, analytics):
        user = factory.user()
        course = factory.course()
        factory.purchase(user, course, provider_ref="ORDER-1")

        result = settle_order(db, "ORDER-DOES-NOT-EXIST", COMPLETED)

        assert result.unknown
        assert not result.ok
        assert db.query(Payment).count() == 0
        assert db.query(Enrollment).count() == 0
        notifications.send_purchase_confirmation.assert_not_called()

    def test_failed_capture_leaves_purchase_pending(self, db, factory, notifications, analytics):
        user = factory.user(email="buyer@test.com")
        course = factory.course()
        purchase = factory.purchase(user, course)

        result = settle_order(db, "ORDER-1", CaptureOutcome(status="DECLINED"))

        assert result.failed
        db.expire_all()
        assert db.get(Purchase, purchase.id).status == PurchaseStatus.PENDING
        assert db.query(Payment).count() == 0
        assert db.query(Enrollment).count() == 0
        notifications.send_purchase_failed.assert_called_once()
        assert notifications.send_purchase_failed.call_args[0][0] == "buyer@test.com"


class TestPostCommitIsolation:
    def test_email_failure_does_not_undo_settlement(self, db, factory, notifications, analytics):
        user = factory.user()
        course = factory.course()
        purchase = factory.purchase(user, course)
        notifications.send_purchase_confirmation.side_effect = RuntimeError("mail server down")

        result = settle_order(db, "ORDER-1", COMPLETED)

        assert result.settled == [purchase.id]
        db.expire_all()
        assert db.get(Purchase, purchase.id).status == PurchaseStatus.PAID
        assert db.query(Payment).count() == 1
        # Later tasks still run
        notifications.send_enrollment_email.assert_called_once()
        analytics.track.assert_called_once()

    def test_analytics_failure_is_swallowed(self, db, factory, notifications, analytics):
        user = factory.user()
        course = factory.course()
        factory.purchase(user, course)
        analytics.track.side_effect = ConnectionError("collector unreachable")

        result = settle_order(db, "ORDER-1", COMPLETED)

        assert result.ok


class TestMultiCourseBatch:
    def test_batch_with_one_already_paid(self, db, factory, notifications, analytics):
        user = factory.user()
        paid_course = factory.course()
        new_course = factory.course(inventory=2)
        already = factory.purchase(user, paid_course, provider_ref="ORDER-CART", status=PurchaseStatus.PAID)
        pending = factory.purchase(user, new_course, provider_ref="ORDER-CART")

        result = settle_order(db, "ORDER-CART", COMPLETED)

        assert result.settled == [pending.id]
        assert result.already_paid == [already.id]
        assert result.ok
        assert db.query(Payment).count() == 1
        assert db.query(Payment).one().purchase_id == pending.id
        db.expire_all()
        assert db.get(Course, new_course.id).inventory == 1
        assert notifications.send_purchase_confirmation.call_count == 1

    def test_purchase_ids_narrow_the_batch(self, db, factory, notifications, analytics):
        user = factory.user()
        first = factory.purchase(user, factory.course(), provider_ref="ORDER-CART")
        second = factory.purchase(user, factory.course(), provider_ref="ORDER-CART")

        result = settle_order(db, "ORDER-CART", COMPLETED, purchase_ids=[second.id])

        assert result.settled == [second.id]
        db.expire_all()
        assert db.get(Purchase, first.id).status == PurchaseStatus.PENDING

    def test_sold_out_course_does_not_block_the_rest(self, db, factory, notifications, analytics):
        user = factory.user()
        sold_out = factory.course(inventory=0)
        available = factory.course(inventory=None)
        blocked = factory.purchase(user, sold_out, provider_ref="ORDER-CART")
        ok = factory.purchase(user, available, provider_ref="ORDER-CART")

        result = settle_order(db, "ORDER-CART", COMPLETED)

        assert result.out_of_stock == [blocked.id]
        assert result.settled == [ok.id]
        assert ledger.find_enrollment(db, user.id, available.id) is not None
        assert ledger.find_enrollment(db, user.id, sold_out.id) is None
