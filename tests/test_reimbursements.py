from __future__ import annotations

import unittest
from decimal import Decimal

from geoattend.errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from geoattend.models import (
    ExpenseClaim,
    ExpenseClaimStatus,
    PaymentMethod,
    ReimbursementBatch,
    ReimbursementBatchStatus,
    Role,
)
from geoattend.security import Identity
from geoattend.services.local_time import normalize_ts
from geoattend.services.reimbursements import (
    create_reimbursement_batch,
    list_batch_claims,
    transition_reimbursement_batch,
)
from tests.db_support import add_claim, add_employee, ist, make_session, recording_outbox


class ReimbursementBatchTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        finance = add_employee(self.db, full_name="Finance Desk", role=Role.FINANCE)
        self.finance = Identity(id=finance.id, role=Role.FINANCE.value)
        self.alice = add_employee(self.db, full_name="Alice Thomas", email="alice@example.com")
        self.bala = add_employee(self.db, full_name="Bala Krishnan", email="bala@example.com")
        self.claims = [
            add_claim(self.db, employee_id=self.alice.id, amount="120.00"),
            add_claim(self.db, employee_id=self.alice.id, amount="80.50"),
            add_claim(self.db, employee_id=self.bala.id, amount="150.00"),
        ]
        self.claim_ids = [claim.id for claim in self.claims]

    def tearDown(self) -> None:
        self.db.close()

    def _claims(self) -> list[ExpenseClaim]:
        return list(
            self.db.query(ExpenseClaim)
            .populate_existing()
            .filter(ExpenseClaim.id.in_(self.claim_ids))
            .order_by(ExpenseClaim.id)
            .all()
        )

    def _processing_batch(self, **kwargs) -> ReimbursementBatch:
        batch = create_reimbursement_batch(
            self.db,
            claim_ids=self.claim_ids,
            created_by=self.finance,
            now_utc=ist(2026, 3, 5, 11, 0),
            **kwargs,
        )
        return transition_reimbursement_batch(
            self.db,
            batch_id=batch.id,
            target_status=ReimbursementBatchStatus.PROCESSING,
            actor=self.finance,
            now_utc=ist(2026, 3, 5, 11, 5),
        )

    def test_create_links_claims_and_totals_amount(self) -> None:
        batch = create_reimbursement_batch(
            self.db,
            claim_ids=[*self.claim_ids, self.claim_ids[0]],
            created_by=self.finance,
            payment_method=PaymentMethod.CASH,
            now_utc=ist(2026, 3, 5, 11, 0),
        )

        self.assertEqual(batch.status, ReimbursementBatchStatus.PENDING)
        self.assertEqual(batch.total_amount, Decimal("350.50"))
        self.assertEqual(batch.member_claim_ids, sorted(self.claim_ids))
        self.assertTrue(batch.batch_code.startswith("REIMB-"))
        self.assertEqual([claim.reimbursement_batch_id for claim in self._claims()], [batch.id] * 3)
        self.assertEqual([claim.id for claim in list_batch_claims(self.db, batch)], sorted(self.claim_ids))

    def test_completed_marks_every_claim_reimbursed_with_one_timestamp(self) -> None:
        batch = self._processing_batch()
        outbox, notifier = recording_outbox()

        completed = transition_reimbursement_batch(
            self.db,
            batch_id=batch.id,
            target_status=ReimbursementBatchStatus.COMPLETED,
            actor=self.finance,
            reference_number=" UTR-99812 ",
            now_utc=ist(2026, 3, 6, 15, 0),
            outbox=outbox,
        )
        outbox.flush()

        self.assertEqual(completed.status, ReimbursementBatchStatus.COMPLETED)
        self.assertEqual(completed.reference_number, "UTR-99812")
        claims = self._claims()
        self.assertTrue(all(claim.status == ExpenseClaimStatus.REIMBURSED for claim in claims))
        self.assertEqual({normalize_ts(claim.reimbursed_at) for claim in claims}, {ist(2026, 3, 6, 15, 0)})
        self.assertEqual(
            [(item[0], item[1], item[2]["claim_count"], item[2]["amount"]) for item in notifier.sent],
            [
                ("alice@example.com", "REIMBURSEMENT_COMPLETED", 2, "200.50"),
                ("bala@example.com", "REIMBURSEMENT_COMPLETED", 1, "150.00"),
            ],
        )

    def test_failed_batch_returns_claims_to_approved_queue(self) -> None:
        batch = self._processing_batch(batch_code="MARCH-WEEK-1")
        outbox, notifier = recording_outbox()

        failed = transition_reimbursement_batch(
            self.db,
            batch_id=batch.id,
            target_status=ReimbursementBatchStatus.FAILED,
            actor=self.finance,
            now_utc=ist(2026, 3, 6, 15, 0),
            outbox=outbox,
        )
        outbox.flush()

        self.assertEqual(failed.status, ReimbursementBatchStatus.FAILED)
        self.assertEqual(failed.failure_reason, "Payment failed")
        self.assertEqual(failed.member_claim_ids, sorted(self.claim_ids))
        for claim in self._claims():
            self.assertEqual(claim.status, ExpenseClaimStatus.APPROVED)
            self.assertIsNone(claim.reimbursement_batch_id)
            self.assertIsNone(claim.reimbursed_at)

        # One message per employee, not per claim.
        self.assertEqual(
            [(item[0], item[1]) for item in notifier.sent],
            [("alice@example.com", "REIMBURSEMENT_FAILED"), ("bala@example.com", "REIMBURSEMENT_FAILED")],
        )

        retry = create_reimbursement_batch(
            self.db,
            claim_ids=self.claim_ids,
            created_by=self.finance,
            batch_code="MARCH-WEEK-1-RETRY",
        )
        self.assertEqual(retry.status, ReimbursementBatchStatus.PENDING)
        self.assertEqual({claim.reimbursement_batch_id for claim in self._claims()}, {retry.id})

    def test_transitions_follow_the_batch_lifecycle(self) -> None:
        batch = create_reimbursement_batch(self.db, claim_ids=self.claim_ids, created_by=self.finance)

        with self.assertRaises(ConflictError) as ctx:
            transition_reimbursement_batch(
                self.db,
                batch_id=batch.id,
                target_status=ReimbursementBatchStatus.COMPLETED,
                actor=self.finance,
            )
        self.assertEqual(ctx.exception.code, "INVALID_BATCH_TRANSITION")

        with self.assertRaises(ValidationError) as ctx:
            transition_reimbursement_batch(
                self.db,
                batch_id=batch.id,
                target_status=ReimbursementBatchStatus.PENDING,
                actor=self.finance,
            )
        self.assertEqual(ctx.exception.code, "INVALID_BATCH_STATUS")

        with self.assertRaises(NotFoundError):
            transition_reimbursement_batch(
                self.db,
                batch_id=9999,
                target_status=ReimbursementBatchStatus.PROCESSING,
                actor=self.finance,
            )

        self.assertEqual(self.db.get(ReimbursementBatch, batch.id).status, ReimbursementBatchStatus.PENDING)
        self.assertTrue(all(claim.status == ExpenseClaimStatus.APPROVED for claim in self._claims()))

    def test_unavailable_claim_rolls_back_whole_batch(self) -> None:
        pending_claim = add_claim(
            self.db,
            employee_id=self.bala.id,
            amount="42.00",
            status=ExpenseClaimStatus.PENDING,
        )

        with self.assertRaises(ConflictError) as ctx:
            create_reimbursement_batch(
                self.db,
                claim_ids=[*self.claim_ids, pending_claim.id],
                created_by=self.finance,
            )

        self.assertEqual(ctx.exception.code, "CLAIM_NOT_AVAILABLE")
        self.assertEqual(self.db.query(ReimbursementBatch).count(), 0)
        self.assertTrue(all(claim.reimbursement_batch_id is None for claim in self._claims()))

    def test_claim_cannot_join_two_batches(self) -> None:
        create_reimbursement_batch(self.db, claim_ids=self.claim_ids[:1], created_by=self.finance, batch_code="B-1")
        with self.assertRaises(ConflictError) as ctx:
            create_reimbursement_batch(self.db, claim_ids=self.claim_ids, created_by=self.finance, batch_code="B-2")
        self.assertEqual(ctx.exception.code, "CLAIM_NOT_AVAILABLE")

    def test_create_validation_and_duplicate_code(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            create_reimbursement_batch(self.db, claim_ids=[], created_by=self.finance)
        self.assertEqual(ctx.exception.code, "NO_CLAIMS")

        with self.assertRaises(NotFoundError) as ctx:
            create_reimbursement_batch(self.db, claim_ids=[9999], created_by=self.finance)
        self.assertEqual(ctx.exception.code, "CLAIM_NOT_FOUND")

        create_reimbursement_batch(self.db, claim_ids=self.claim_ids[:1], created_by=self.finance, batch_code="B-1")
        with self.assertRaises(ConflictError) as ctx:
            create_reimbursement_batch(self.db, claim_ids=self.claim_ids[1:], created_by=self.finance, batch_code="B-1")
        self.assertEqual(ctx.exception.code, "DUPLICATE_BATCH_CODE")

    def test_only_admin_or_finance_can_manage_batches(self) -> None:
        hr = Identity(id=self.alice.id, role=Role.HR.value)
        with self.assertRaises(UnauthorizedError):
            create_reimbursement_batch(self.db, claim_ids=self.claim_ids, created_by=hr)

        admin = Identity(id=self.alice.id, role=Role.ADMIN.value)
        batch = create_reimbursement_batch(self.db, claim_ids=self.claim_ids, created_by=admin)
        with self.assertRaises(UnauthorizedError):
            transition_reimbursement_batch(
                self.db,
                batch_id=batch.id,
                target_status=ReimbursementBatchStatus.PROCESSING,
                actor=hr,
            )


if __name__ == "__main__":
    unittest.main()
