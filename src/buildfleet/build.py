"""Build executor: launch VM, wait for the guest, monitor, report, tear down.

Flow for one claimed job:
    1. Launch a VM with the shared directory mounted
    2. Wait for the controller to report the guest authenticated
    3. Watch signal files until the guest finishes (or times out)
    4. Report the outcome (or abandon the job when cancelled)
    5. Terminate and reclaim the VM, on every path
"""

from __future__ import annotations

import logging

from buildfleet.controller import BuildJob
from buildfleet.errors import BuildCancelled, JobError, ReportError
from buildfleet.events import BuildFinished, BuildStarted, WorkerEvents
from buildfleet.reporter import ResultReporter
from buildfleet.vm.manager import BuildOutcome, CancelToken, VMInstance, VMOrchestrator

logger = logging.getLogger(__name__)


async def run_build(
    job: BuildJob,
    orchestrator: VMOrchestrator,
    reporter: ResultReporter,
    events: WorkerEvents,
    cancel: CancelToken,
) -> BuildOutcome | None:
    """Execute one job end to end.

    Returns the outcome that was reported, or None when the build was
    cancelled and abandoned. Never raises for job-level failures.
    """
    instance: VMInstance | None = None
    outcome: BuildOutcome | None = None
    abandon_reason: str | None = None

    await events.publish(BuildStarted(build_id=job.id, platform=job.platform))
    logger.info("Starting build %s (%s)", job.id, job.platform)

    try:
        try:
            instance = await orchestrator.launch(job, cancel)
            vm_token = await orchestrator.await_ready(job, instance, cancel)
            outcome = await orchestrator.monitor(job, instance, vm_token, cancel)
        except BuildCancelled as e:
            abandon_reason = str(e) or "worker shutting down"
        except JobError as e:
            logger.warning("Build %s failed: %s", job.id, e)
            outcome = BuildOutcome(success=False, error_message=str(e))
        except Exception as e:
            logger.exception("Unexpected error in build %s", job.id)
            outcome = BuildOutcome(success=False, error_message=f"Worker error: {e}")

        # Reporting is best effort: the outcome is already decided
        try:
            if outcome is not None:
                await reporter.report_result(job.id, outcome.success, error_message=outcome.error_message)
            else:
                await reporter.report_abandoned(job.id, abandon_reason or "cancelled")
        except ReportError as e:
            logger.error("%s", e)

    finally:
        if instance is not None:
            await _cleanup(orchestrator, instance, reusable=outcome is not None and outcome.success)

    await events.publish(
        BuildFinished(
            build_id=job.id,
            success=bool(outcome and outcome.success),
            error=outcome.error_message if outcome else abandon_reason,
        )
    )
    return outcome


async def _cleanup(orchestrator: VMOrchestrator, instance: VMInstance, reusable: bool) -> None:
    try:
        await orchestrator.terminate(instance)
    except Exception:
        logger.exception("Failed to stop VM %s", instance.name)
    try:
        await orchestrator.reclaim(instance, keep=reusable)
    except Exception:
        logger.exception("Failed to reclaim VM %s", instance.name)
