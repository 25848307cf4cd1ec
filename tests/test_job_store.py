from __future__ import annotations

import pytest

from variant_forge.errors import InvalidTransition, JobNotFound
from variant_forge.jobs import JobStatus, JobStore, JobType

SHOP = "demo.myshopify.com"


def test_job_lifecycle(jobs):
    job = jobs.create(SHOP, JobType.GENERATE_VARIANTS, {"templateId": "t1"})
    assert job.status == JobStatus.PENDING
    assert job.type == "generateVariants"

    jobs.start(job.job_id)
    jobs.update_progress(job.job_id, 2, total=4)
    done = jobs.complete(job.job_id, {"message": "ok"})

    public = done.to_public()
    assert public["status"] == "completed"
    assert public["progress"] == 2 and public["total"] == 4
    assert public["result"] == {"message": "ok"}
    assert "error" not in public


def test_failed_job_exposes_error_not_result(jobs):
    job = jobs.create(SHOP, "generateVariants")
    jobs.start(job.job_id)
    public = jobs.fail(job.job_id, "Color mapping not found for mauve").to_public()
    assert public["status"] == "failed"
    assert public["error"] == "Color mapping not found for mauve"
    assert "result" not in public


@pytest.mark.parametrize("finish", ["complete", "fail"])
def test_terminal_jobs_reject_every_transition(jobs, finish):
    job = jobs.create(SHOP, "generateVariants")
    jobs.start(job.job_id)
    if finish == "complete":
        jobs.complete(job.job_id, {})
    else:
        jobs.fail(job.job_id, "boom")

    with pytest.raises(InvalidTransition):
        jobs.start(job.job_id)
    with pytest.raises(InvalidTransition):
        jobs.complete(job.job_id, {})
    with pytest.raises(InvalidTransition):
        jobs.fail(job.job_id, "again")
    with pytest.raises(InvalidTransition):
        jobs.update_progress(job.job_id, 1)


def test_complete_requires_processing(jobs):
    job = jobs.create(SHOP, "generateVariants")
    with pytest.raises(InvalidTransition):
        jobs.complete(job.job_id, {})
    with pytest.raises(InvalidTransition):
        jobs.update_progress(job.job_id, 1)


def test_progress_is_clamped_to_total(jobs):
    job = jobs.create(SHOP, "generateThumbnails", total=3)
    jobs.start(job.job_id)
    assert jobs.update_progress(job.job_id, 10).progress == 3
    assert jobs.update_progress(job.job_id, -1).progress == 0


def test_state_survives_a_new_store(tmp_path, jobs):
    job = jobs.create(SHOP, "generateVariants")
    jobs.start(job.job_id)
    reopened = JobStore(tmp_path)
    assert reopened.require(job.job_id).status == JobStatus.PROCESSING


def test_jobs_are_scoped_to_their_shop(jobs):
    job = jobs.create(SHOP, "generateVariants")
    assert jobs.get(job.job_id, "other.myshopify.com") is None
    with pytest.raises(JobNotFound):
        jobs.require(job.job_id, "other.myshopify.com")
    assert jobs.get("does-not-exist") is None


def test_dependent_runs_only_after_dependency_completes(jobs):
    parent = jobs.create(SHOP, JobType.GENERATE_VARIANTS)
    child = jobs.create(SHOP, JobType.GENERATE_THUMBNAILS, depends_on=parent.job_id)
    assert [j.job_id for j in jobs.list_runnable(SHOP)] == [parent.job_id]

    jobs.start(parent.job_id)
    assert jobs.list_runnable(SHOP) == []

    jobs.complete(parent.job_id, {})
    runnable = jobs.list_runnable(SHOP, "generateThumbnails")
    assert [j.job_id for j in runnable] == [child.job_id]
    assert [j.job_id for j in jobs.dependents(parent.job_id)] == [child.job_id]


def test_failed_dependency_fails_dependents(jobs):
    parent = jobs.create(SHOP, JobType.GENERATE_VARIANTS)
    child = jobs.create(SHOP, JobType.GENERATE_THUMBNAILS, depends_on=parent.job_id)
    grandchild = jobs.create(SHOP, JobType.GENERATE_THUMBNAILS, depends_on=child.job_id)
    jobs.start(parent.job_id)
    jobs.fail(parent.job_id, "listing failed")

    assert jobs.require(child.job_id).status == JobStatus.FAILED
    assert parent.job_id in jobs.require(child.job_id).error
    assert jobs.require(grandchild.job_id).status == JobStatus.FAILED
    assert jobs.list_runnable(SHOP) == []


def test_unknown_dependency_rejected(jobs):
    with pytest.raises(JobNotFound):
        jobs.create(SHOP, "generateThumbnails", depends_on="missing")


def test_recent_is_limited_and_per_shop(jobs):
    for _ in range(3):
        jobs.create(SHOP, "generateVariants")
    jobs.create("other.myshopify.com", "generateVariants")
    assert len(jobs.recent(SHOP, limit=2)) == 2
    assert len(jobs.recent(SHOP)) == 3


def test_cleanup_removes_only_finished_jobs(jobs):
    finished = jobs.create(SHOP, "generateVariants")
    jobs.start(finished.job_id)
    jobs.complete(finished.job_id, {})
    pending = jobs.create(SHOP, "generateVariants")

    assert jobs.cleanup(older_than_days=7) == 0
    # A negative window puts the cutoff in the future.
    assert jobs.cleanup(older_than_days=-1) == 1
    assert jobs.get(finished.job_id) is None
    assert jobs.get(pending.job_id) is not None
