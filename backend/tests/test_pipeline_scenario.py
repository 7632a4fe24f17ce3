"""
End-to-end scenario through every stage of the pipeline.

Checkpoint deadline 2024-01-01T00:00:00Z passes with no submission ->
monitor at 00:05 fails it -> mercy roll executes -> $10 to Doctors Without
Borders -> shown once -> acknowledged -> gone from later catch-ups.
"""
from datetime import datetime
from decimal import Decimal

from conftest import always


class TestMissedCheckpointScenario:

    def test_missed_checkpoint_end_to_end(self, session_factory, db, make_unit, clock, user, collaborators):
        from app.services.enforcement import (
            DeadlineMonitor, ConsequenceDecisionEngine, ConsequenceExecutor,
            PushChannel, ClientSession,
        )
        from app.models.db_models import (
            ConsequenceRecordDB, UnitKind, UnitStatus, MercyOutcome, ExecutionStatus,
        )

        assert clock.now == datetime(2024, 1, 1, 0, 5)
        unit = make_unit(
            deadline=datetime(2024, 1, 1, 0, 0),
            kind=UnitKind.CHECKPOINT,
            stakes=[{"kind": "monetary", "amount": "10", "destination": "doctors_without_borders"}],
        )
        channel = PushChannel()
        options = {"clock": clock}
        phone = ClientSession(session_factory, channel, user.id, "phone", queue_options=options)
        laptop = ClientSession(session_factory, channel, user.id, "laptop", queue_options=options)
        assert phone.connect() == []
        assert laptop.connect() == []

        # Monitor run at 00:05
        engine = ConsequenceDecisionEngine(db, randbelow=always(0), clock=clock)
        summary = DeadlineMonitor(db, decision_engine=engine, clock=clock).run()
        assert summary["transitioned"] == 1
        db.expire_all()
        assert unit.status == UnitStatus.FAILED

        record = db.query(ConsequenceRecordDB).filter(ConsequenceRecordDB.deadline_unit_id == unit.id).one()
        assert record.mercy_roll_outcome == MercyOutcome.EXECUTED

        # Executor
        ConsequenceExecutor(db, collaborators, push_channel=channel, clock=clock).run_due()
        db.expire_all()
        assert collaborators.payment.calls == [(record.id, Decimal("10"), "doctors_without_borders")]
        assert record.execution_status == ExecutionStatus.COMPLETED
        assert record.execution_details["transaction_id"] == "tr_1"

        # Both sessions heard the push; exactly one shows it
        shown = phone.poll_push() + laptop.poll_push()
        assert [n.id for n in shown] == [record.id]
        viewer = phone if phone.current else laptop
        assert viewer.current.execution_details["transaction_id"] == "tr_1"

        viewer.dismiss()
        phone.disconnect()
        laptop.disconnect()

        tablet = ClientSession(session_factory, channel, user.id, "tablet", queue_options=options)
        clock.advance(days=1)
        assert tablet.connect() == []
        assert phone.reconnect() == []
        tablet.disconnect()
        phone.disconnect()
