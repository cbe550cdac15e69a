import pytest

from product_importer.core.errors import (
    ConcurrencyLimitExceeded,
    MissingIdempotencyKey,
    PruneConfirmationRequired,
    PruningDisabled,
)
from product_importer.db.models.import_job import ImportJob
from product_importer.services.admission import AdmissionController
from product_importer.services.safety_gate import check_prune_gate


def _job(owner_id="user_1", key="k1", status="created"):
    return ImportJob(
        trace_id="trace_1",
        idempotency_key=key,
        import_session_id="session_1",
        owner_id=owner_id,
        status=status,
    )


@pytest.mark.parametrize("key", [None, "", "   "])
def test_idempotency_key_required(key):
    with pytest.raises(MissingIdempotencyKey) as exc_info:
        AdmissionController.require_idempotency_key(key)
    assert exc_info.value.status_code == 400
    assert exc_info.value.code == "idempotency_key_required"


def test_idempotency_key_is_trimmed():
    assert AdmissionController.require_idempotency_key(" abc ") == "abc"


def test_find_existing_is_scoped_to_owner(session, jobs):
    job, created = jobs.create(_job())
    assert created
    admission = AdmissionController(jobs, max_concurrent=1)
    assert admission.find_existing("user_1", "k1").id == job.id
    assert admission.find_existing("user_2", "k1") is None


def test_duplicate_insert_returns_winner(session, jobs):
    winner, _ = jobs.create(_job())
    existing, created = jobs.create(_job())
    assert created is False
    assert existing.id == winner.id


def test_capacity_counts_only_active_jobs(session, jobs):
    admission = AdmissionController(jobs, max_concurrent=2, retry_after_seconds=30)
    jobs.create(_job(key="a", status="processing"))
    jobs.create(_job(key="b", status="completed"))
    jobs.create(_job(key="c", status="validating", owner_id="user_2"))
    admission.check_capacity("user_1")

    jobs.create(_job(key="d", status="created"))
    with pytest.raises(ConcurrencyLimitExceeded) as exc_info:
        admission.check_capacity("user_1")
    error = exc_info.value
    assert error.status_code == 429
    assert error.headers() == {"Retry-After": "30"}
    assert error.details == {"active_jobs": 2, "limit": 2, "retry_after": 30, "retryable": True}


def test_prune_gate_noop_without_prune():
    check_prune_gate(False, pruning_enabled=False, confirm_header=None, confirm_token=None)


def test_prune_gate_policy_disabled():
    with pytest.raises(PruningDisabled) as exc_info:
        check_prune_gate(True, pruning_enabled=False, confirm_header="yes", confirm_token="PRUNE_VARIANTS")
    assert exc_info.value.status_code == 403
    assert exc_info.value.code == "pruning_disabled"


@pytest.mark.parametrize(
    ("header", "token", "missing"),
    [
        (None, None, ["X-Confirm-Prune", "prune_confirm_token"]),
        ("YES", "PRUNE_VARIANTS", ["X-Confirm-Prune"]),
        ("yes", "prune_variants", ["prune_confirm_token"]),
    ],
)
def test_prune_gate_requires_both_confirmations(header, token, missing):
    with pytest.raises(PruneConfirmationRequired) as exc_info:
        check_prune_gate(True, pruning_enabled=True, confirm_header=header, confirm_token=token)
    error = exc_info.value
    assert error.status_code == 400
    assert error.details["missing"] == missing
    assert error.details["required"] == {
        "header": "X-Confirm-Prune: yes",
        "body": 'prune_confirm_token: "PRUNE_VARIANTS"',
    }


def test_prune_gate_passes_with_all_three():
    check_prune_gate(True, pruning_enabled=True, confirm_header="yes", confirm_token="PRUNE_VARIANTS")
