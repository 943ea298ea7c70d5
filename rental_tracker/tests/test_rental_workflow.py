import os
import sys
import unittest
from datetime import date, timedelta
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import mock

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


os.environ.setdefault("RENTAL_TRACKER_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.session import init_db
from models.enums import ApprovalDecision, ItemCategory, ItemStatus, RentalStatus
from models.rental_models import AuditLog, Item, NotificationQueue, Rental, User
from services import approval_router, item_service, rental_service
from services.errors import RecordNotFoundError, WorkflowError


def make_session_factory():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_db(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


class RentalWorkflowTests(unittest.TestCase):
    def setUp(self):
        self.log_dir = TemporaryDirectory()
        self.env = mock.patch.dict(
            os.environ,
            {
                "EMAIL_LOG_DIR": self.log_dir.name,
                "EMAIL_ENABLED": "false",
                "CONSUMABLES_ALLOW_CONCURRENT": "true",
                "APPROVER_EMAIL_TECH_TEAM": "",
                "APPROVER_EMAIL_PRODUCT_TEAM": "",
            },
        )
        self.env.start()
        self.db = make_session_factory()()
        self.today = date.today()
        self.requester = self._add_user("u100", "Requester", "technology", "user")
        self.other = self._add_user("u200", "Other Person", "technology", "user")

    def tearDown(self):
        self.db.close()
        self.env.stop()
        self.log_dir.cleanup()

    def _add_user(self, user_id, name, department, role):
        user = User(UserID=user_id, Name=name, Department=department, Role=role, Email=f"{user_id}@example.com")
        self.db.add(user)
        self.db.commit()
        return user

    def _add_item(self, name="Router-1", category=ItemCategory.ROUTER, serial="SN-001", status=ItemStatus.AVAILABLE):
        item = Item(Category=category.value, Name=name, SerialNumber=serial, Status=status.value)
        self.db.add(item)
        self.db.commit()
        return item

    def _due(self, days=7):
        return self.today + timedelta(days=days)

    def _activate(self, item, user=None, days=7):
        rental = rental_service.create_rental(self.db, item.ItemID, (user or self.requester).UserID, self._due(days))
        for approval in list(rental.Approvals):
            rental_service.approve(self.db, approval.ApprovalID, decided_by="admin1")
        return rental

    def test_router_example_flow(self):
        item = self._add_item("Router-1")

        rental = rental_service.create_rental(self.db, item.ItemID, self.requester.UserID, self._due())
        self.assertEqual(rental.Status, RentalStatus.REQUESTED.value)
        self.assertEqual(len(rental.Approvals), 1)
        approval = rental.Approvals[0]
        self.assertEqual(approval.Decision, ApprovalDecision.PENDING.value)
        self.assertEqual(approval.ApproverID, approval_router.TECH_TEAM_QUEUE)

        rental_service.approve(self.db, approval.ApprovalID, note="ok", decided_by="admin1")
        self.assertEqual(rental.Status, RentalStatus.ACTIVE.value)
        self.assertIsNotNone(rental.RentalDate)
        self.assertEqual(self.db.get(Item, item.ItemID).Status, ItemStatus.UNAVAILABLE.value)

        rental_service.return_rental(self.db, rental.RentalID)
        self.assertEqual(rental.Status, RentalStatus.RETURNED.value)
        self.assertIsNotNone(rental.ActualReturnDate)
        self.assertEqual(self.db.get(Item, item.ItemID).Status, ItemStatus.AVAILABLE.value)

    def test_create_rental_for_unavailable_item_always_fails(self):
        item = self._add_item(status=ItemStatus.UNAVAILABLE)
        for _ in range(3):
            with self.assertRaises(WorkflowError):
                rental_service.create_rental(self.db, item.ItemID, self.requester.UserID, self._due())

    def test_create_rental_requires_existing_item_and_user(self):
        item = self._add_item()
        with self.assertRaises(WorkflowError):
            rental_service.create_rental(self.db, 9999, self.requester.UserID, self._due())
        with self.assertRaises(WorkflowError):
            rental_service.create_rental(self.db, item.ItemID, "nobody", self._due())

    def test_create_rental_rejects_past_expected_return_date(self):
        item = self._add_item()
        with self.assertRaises(WorkflowError):
            rental_service.create_rental(self.db, item.ItemID, self.requester.UserID, self.today - timedelta(days=1))

    def test_hardware_item_allows_one_open_rental(self):
        item = self._add_item()
        rental_service.create_rental(self.db, item.ItemID, self.requester.UserID, self._due())
        with self.assertRaises(WorkflowError) as ctx:
            rental_service.create_rental(self.db, item.ItemID, self.other.UserID, self._due())
        self.assertIn("requested", str(ctx.exception))

    def test_consumables_allow_concurrent_rentals_by_default(self):
        item = self._add_item("Patch cables", ItemCategory.CONSUMABLE, serial=None)
        first = self._activate(item)
        second = self._activate(item, user=self.other)

        self.assertEqual(first.Status, RentalStatus.ACTIVE.value)
        self.assertEqual(second.Status, RentalStatus.ACTIVE.value)
        self.assertEqual(first.Approvals[0].ApproverID, approval_router.PRODUCT_TEAM_QUEUE)
        self.assertEqual(self.db.get(Item, item.ItemID).Status, ItemStatus.AVAILABLE.value)

    def test_consumables_are_exclusive_when_concurrency_disabled(self):
        item = self._add_item("Patch cables", ItemCategory.CONSUMABLE, serial=None)
        with mock.patch.dict(os.environ, {"CONSUMABLES_ALLOW_CONCURRENT": "false"}):
            rental = self._activate(item)
            self.assertEqual(self.db.get(Item, item.ItemID).Status, ItemStatus.UNAVAILABLE.value)
            with self.assertRaises(WorkflowError):
                rental_service.create_rental(self.db, item.ItemID, self.other.UserID, self._due())
            rental_service.return_rental(self.db, rental.RentalID)
            self.assertEqual(self.db.get(Item, item.ItemID).Status, ItemStatus.AVAILABLE.value)

    def test_return_frees_item_after_concurrency_setting_changes(self):
        item = self._add_item("Patch cables", ItemCategory.CONSUMABLE, serial=None)
        with mock.patch.dict(os.environ, {"CONSUMABLES_ALLOW_CONCURRENT": "false"}):
            rental = self._activate(item)
        self.assertEqual(self.db.get(Item, item.ItemID).Status, ItemStatus.UNAVAILABLE.value)

        rental_service.return_rental(self.db, rental.RentalID)
        self.assertEqual(self.db.get(Item, item.ItemID).Status, ItemStatus.AVAILABLE.value)

    def test_concurrent_consumable_stays_available_while_other_loans_remain(self):
        item = self._add_item("Patch cables", ItemCategory.CONSUMABLE, serial=None)
        first = self._activate(item)
        self._activate(item, user=self.other)
        rental_service.return_rental(self.db, first.RentalID)
        self.assertEqual(self.db.get(Item, item.ItemID).Status, ItemStatus.AVAILABLE.value)

    def test_open_rental_locks_item_category_and_status(self):
        item = self._add_item()
        rental = self._activate(item)

        with self.assertRaises(WorkflowError):
            item_service.update_item(self.db, item.ItemID, {"category": "consumable"})
        with self.assertRaises(WorkflowError):
            item_service.update_item(self.db, item.ItemID, {"status": "available"})
        item_service.update_item(self.db, item.ItemID, {"note": "rack 4"})
        self.assertEqual(item.Category, ItemCategory.ROUTER.value)
        self.assertEqual(item.Status, ItemStatus.UNAVAILABLE.value)

        rental_service.return_rental(self.db, rental.RentalID)
        self.assertEqual(item.Status, ItemStatus.AVAILABLE.value)

    def test_delete_keeps_rental_history(self):
        item = self._add_item()
        rental = self._activate(item)
        rental_service.return_rental(self.db, rental.RentalID)

        with self.assertRaises(WorkflowError):
            item_service.delete_item(self.db, item.ItemID)
        self.assertIsNotNone(self.db.get(Rental, rental.RentalID))

        unused = self._add_item("Router-9", serial="SN-9")
        item_service.delete_item(self.db, unused.ItemID)
        self.assertIsNone(self.db.get(Item, unused.ItemID))

    def test_activation_waits_for_every_approval_and_happens_once(self):
        item = self._add_item()
        routes = {ItemCategory.ROUTER: (approval_router.TECH_TEAM_QUEUE, approval_router.PRODUCT_TEAM_QUEUE)}
        with mock.patch.dict(approval_router.APPROVAL_ROUTES, routes):
            rental = rental_service.create_rental(self.db, item.ItemID, self.requester.UserID, self._due())
        first, second = sorted(rental.Approvals, key=lambda a: a.ApprovalID)

        rental_service.approve(self.db, first.ApprovalID, decided_by="admin1")
        self.assertEqual(rental.Status, RentalStatus.REQUESTED.value)
        self.assertEqual(self.db.get(Item, item.ItemID).Status, ItemStatus.AVAILABLE.value)

        rental_service.approve(self.db, second.ApprovalID, decided_by="admin2")
        self.assertEqual(rental.Status, RentalStatus.ACTIVE.value)
        self.assertEqual(self.db.get(Item, item.ItemID).Status, ItemStatus.UNAVAILABLE.value)

        with self.assertRaises(WorkflowError):
            rental_service.approve(self.db, first.ApprovalID, decided_by="admin1")

        activations = self.db.execute(select(AuditLog).where(AuditLog.Action == "Activate")).scalars().all()
        self.assertEqual(len(activations), 1)
        approved_mails = self.db.execute(
            select(NotificationQueue).where(NotificationQueue.NotificationType == "rental_approved")
        ).scalars().all()
        self.assertEqual(len(approved_mails), 1)
        self.assertEqual(approved_mails[0].Recipient, self.requester.Email)

    def test_reject_sets_rental_rejected_regardless_of_other_approvals(self):
        item = self._add_item()
        routes = {ItemCategory.ROUTER: (approval_router.TECH_TEAM_QUEUE, approval_router.PRODUCT_TEAM_QUEUE)}
        with mock.patch.dict(approval_router.APPROVAL_ROUTES, routes):
            rental = rental_service.create_rental(self.db, item.ItemID, self.requester.UserID, self._due())
        first, second = sorted(rental.Approvals, key=lambda a: a.ApprovalID)

        rental_service.approve(self.db, first.ApprovalID, decided_by="admin1")
        rental_service.reject(self.db, second.ApprovalID, note="Out of stock", decided_by="admin2")

        self.assertEqual(rental.Status, RentalStatus.REJECTED.value)
        self.assertEqual(first.Decision, ApprovalDecision.APPROVED.value)
        self.assertEqual(second.Note, "Out of stock")
        self.assertEqual(self.db.get(Item, item.ItemID).Status, ItemStatus.AVAILABLE.value)

        rejected_mail = self.db.execute(
            select(NotificationQueue).where(NotificationQueue.NotificationType == "rental_rejected")
        ).scalars().one()
        self.assertIn("Out of stock", rejected_mail.Payload)

    def test_pending_approval_of_rejected_rental_cannot_be_decided(self):
        item = self._add_item()
        routes = {ItemCategory.ROUTER: (approval_router.TECH_TEAM_QUEUE, approval_router.PRODUCT_TEAM_QUEUE)}
        with mock.patch.dict(approval_router.APPROVAL_ROUTES, routes):
            rental = rental_service.create_rental(self.db, item.ItemID, self.requester.UserID, self._due())
        first, second = sorted(rental.Approvals, key=lambda a: a.ApprovalID)

        rental_service.reject(self.db, first.ApprovalID, decided_by="admin1")
        self.assertEqual(rental.Status, RentalStatus.REJECTED.value)
        self.assertEqual(rental_service.list_pending_approvals(self.db), [])
        with self.assertRaises(WorkflowError):
            rental_service.approve(self.db, second.ApprovalID, decided_by="admin2")

    def test_rejected_item_can_be_requested_again(self):
        item = self._add_item()
        rental = rental_service.create_rental(self.db, item.ItemID, self.requester.UserID, self._due())
        rental_service.reject(self.db, rental.Approvals[0].ApprovalID, decided_by="admin1")

        again = rental_service.create_rental(self.db, item.ItemID, self.other.UserID, self._due())
        self.assertEqual(again.Status, RentalStatus.REQUESTED.value)

    def test_unknown_approval_and_rental_raise_not_found(self):
        with self.assertRaises(RecordNotFoundError):
            rental_service.approve(self.db, 12345)
        with self.assertRaises(RecordNotFoundError):
            rental_service.reject(self.db, 12345)
        with self.assertRaises(RecordNotFoundError):
            rental_service.return_rental(self.db, 12345)

    def test_returning_a_non_active_rental_fails(self):
        item = self._add_item()
        rental = rental_service.create_rental(self.db, item.ItemID, self.requester.UserID, self._due())
        with self.assertRaises(WorkflowError):
            rental_service.return_rental(self.db, rental.RentalID)

        rental_service.approve(self.db, rental.Approvals[0].ApprovalID)
        rental_service.return_rental(self.db, rental.RentalID)
        with self.assertRaises(WorkflowError):
            rental_service.return_rental(self.db, rental.RentalID)

    def test_overdue_scan_lists_active_rentals_until_returned(self):
        item = self._add_item()
        rental = self._activate(item)
        rental.ExpectedReturnDate = self.today - timedelta(days=2)
        self.db.commit()

        overdue = rental_service.list_overdue_rentals(self.db, today=self.today)
        self.assertEqual([(r.RentalID, days) for r, days in overdue], [(rental.RentalID, 2)])

        rental_service.return_rental(self.db, rental.RentalID)
        self.assertEqual(rental_service.list_overdue_rentals(self.db, today=self.today), [])

    def test_rental_due_today_is_not_overdue(self):
        item = self._add_item()
        rental = self._activate(item, days=0)
        self.assertEqual(rental.ExpectedReturnDate, self.today)
        self.assertEqual(rental_service.list_overdue_rentals(self.db, today=self.today), [])

    def test_return_reminders_use_the_configured_window(self):
        soon = self._activate(self._add_item("Switch-1", ItemCategory.SWITCH, "SW-1"), days=1)
        self._activate(self._add_item("Switch-2", ItemCategory.SWITCH, "SW-2"), days=10)

        reminders = rental_service.list_return_reminders(self.db, 3, today=self.today)
        self.assertEqual([(r.RentalID, days) for r, days in reminders], [(soon.RentalID, 1)])
        self.assertEqual(len(rental_service.list_return_reminders(self.db, 10, today=self.today)), 2)
        with self.assertRaises(WorkflowError):
            rental_service.list_return_reminders(self.db, -1)

    def test_category_without_approvers_activates_immediately(self):
        item = self._add_item("Transceiver-1", ItemCategory.TRANSCEIVER, "TR-1")
        with mock.patch.dict(approval_router.APPROVAL_ROUTES, {ItemCategory.TRANSCEIVER: ()}):
            rental = rental_service.create_rental(self.db, item.ItemID, self.requester.UserID, self._due())
        self.assertEqual(rental.Approvals, [])
        self.assertEqual(rental.Status, RentalStatus.ACTIVE.value)
        self.assertEqual(self.db.get(Item, item.ItemID).Status, ItemStatus.UNAVAILABLE.value)

    def test_request_notification_goes_to_configured_approver(self):
        item = self._add_item()
        with mock.patch.dict(os.environ, {"APPROVER_EMAIL_TECH_TEAM": "tech-lead@example.com"}):
            rental_service.create_rental(self.db, item.ItemID, self.requester.UserID, self._due())
        queued = self.db.execute(select(NotificationQueue)).scalars().all()
        self.assertEqual([(n.NotificationType, n.Recipient) for n in queued], [("rental_request", "tech-lead@example.com")])

    def test_request_notification_skipped_without_approver_address(self):
        item = self._add_item()
        rental_service.create_rental(self.db, item.ItemID, self.requester.UserID, self._due())
        self.assertEqual(self.db.execute(select(NotificationQueue)).scalars().all(), [])

    def test_extend_rental_moves_expected_return_date(self):
        item = self._add_item()
        rental = self._activate(item)
        rental_service.extend_rental(self.db, rental.RentalID, self._due(30), extended_by=self.requester.UserID)
        self.assertEqual(rental.ExpectedReturnDate, self._due(30))

        with self.assertRaises(WorkflowError):
            rental_service.extend_rental(self.db, rental.RentalID, self.today - timedelta(days=1))
        rental_service.return_rental(self.db, rental.RentalID)
        with self.assertRaises(WorkflowError):
            rental_service.extend_rental(self.db, rental.RentalID, self._due(40))

    def test_enqueue_due_notifications_queues_reminders_and_overdue(self):
        due_soon = self._activate(self._add_item("Router-2", serial="SN-2"), days=2)
        late = self._activate(self._add_item("Router-3", serial="SN-3"))
        late.ExpectedReturnDate = self.today - timedelta(days=4)
        self.db.commit()

        created = rental_service.enqueue_due_notifications(self.db, 3, today=self.today)
        self.assertEqual(created, 2)
        kinds = {
            (n.RentalID, n.NotificationType)
            for n in self.db.execute(
                select(NotificationQueue).where(NotificationQueue.NotificationType.in_(["return_reminder", "overdue"]))
            ).scalars()
        }
        self.assertEqual(kinds, {(due_soon.RentalID, "return_reminder"), (late.RentalID, "overdue")})


class ApprovalRouterTests(unittest.TestCase):
    def test_consumables_and_hardware_route_to_different_queues(self):
        self.assertEqual(approval_router.route_approvals("consumable"), (approval_router.PRODUCT_TEAM_QUEUE,))
        for category in ("router", "switch", "wireless", "transceiver"):
            self.assertEqual(approval_router.route_approvals(category), (approval_router.TECH_TEAM_QUEUE,))

    def test_legacy_category_labels_resolve_to_one_enum(self):
        self.assertIs(ItemCategory.parse("소모품"), ItemCategory.CONSUMABLE)
        self.assertIs(ItemCategory.parse("소모품류"), ItemCategory.CONSUMABLE)
        self.assertIs(ItemCategory.parse("Router"), ItemCategory.ROUTER)
        self.assertIs(ItemCategory.parse("라우터"), ItemCategory.ROUTER)
        self.assertIs(ItemCategory.parse("무선 제품군"), ItemCategory.WIRELESS)
        self.assertIs(ItemCategory.parse("트랜시버"), ItemCategory.TRANSCEIVER)
        with self.assertRaises(ValueError):
            ItemCategory.parse("printer")

    def test_approver_email_reads_environment(self):
        with mock.patch.dict(os.environ, {"APPROVER_EMAIL_PRODUCT_TEAM": "ops@example.com"}):
            self.assertEqual(approval_router.approver_email(approval_router.PRODUCT_TEAM_QUEUE), "ops@example.com")
        self.assertIsNone(approval_router.approver_email("unknown-queue"))


if __name__ == "__main__":
    unittest.main()
