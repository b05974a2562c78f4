"""Tests for the checkpointed upgrade workflow.

Covers:
  - Forward run through all 21 stages and terminal archiving
  - Checkpoint monotonicity
  - Resume after an interruption
  - Rollback reachability and order
  - Mode validation and lost-state detection
  - Stage failures mapped to outcomes
"""

import pytest

from vmfsupgrade.errors import InvalidModeError
from vmfsupgrade.pipeline.artifacts import (
    ArtifactStore,
    DrsSnapshot,
    RollbackProgress,
    SdrsSnapshot,
    WorkflowIdentity,
)
from vmfsupgrade.pipeline.upgrade import (
    MAX_CHECKPOINT,
    ROLLBACK_ORDER,
    STAGES,
    Mode,
    stage_statuses,
)


def record_checkpoints(pipeline):
    written = []
    original = pipeline.state.write_checkpoint

    def write(value):
        written.append(value)
        original(value)

    pipeline.state.write_checkpoint = write
    return written


# ═══════════════════════════════════════════════════════════════════
#  Stage table
# ═══════════════════════════════════════════════════════════════════

class TestStageTable:
    def test_stages_numbered_one_to_twenty_one(self):
        assert [s.number for s in STAGES] == list(range(1, MAX_CHECKPOINT + 1))

    def test_every_stage_has_a_handler(self):
        from vmfsupgrade.pipeline.upgrade import UpgradePipeline
        for stage in STAGES:
            assert hasattr(UpgradePipeline, f"_stage_{stage.name}")

    def test_every_rollback_stage_has_a_revert_handler(self):
        from vmfsupgrade.pipeline.upgrade import STAGES_BY_NUMBER, UpgradePipeline
        assert ROLLBACK_ORDER == (9, 11, 8, 7, 6)
        for number in ROLLBACK_ORDER:
            assert hasattr(UpgradePipeline, f"_revert_{STAGES_BY_NUMBER[number].name}")

    def test_stage_statuses(self):
        rows = dict((s.number, status) for s, status in stage_statuses(4))
        assert rows[4] == "done"
        assert rows[5] == "next"
        assert rows[6] == "pending"
        assert all(status == "pending" for _, status in stage_statuses(None))


# ═══════════════════════════════════════════════════════════════════
#  Forward run
# ═══════════════════════════════════════════════════════════════════

class TestForwardRun:
    def test_full_run_upgrades_datastore(self, env):
        pipeline = env.pipeline()
        result = pipeline.run()

        assert result.success, result.error
        assert result.mode == Mode.FRESH
        assert result.checkpoint == 21
        assert len(result.completed_stages) == 21

        ds = env.current_source
        assert ds is not env.source
        assert ds.version == 6
        assert ds.luns == ["naa.600a", "naa.600b"]
        assert sorted(env.inventory.vm_names_on(ds)) == ["vm-1", "vm-2", "vm-3"]
        assert [t.name for t in env.inventory.templates_on(ds)] == ["tpl-linux"]
        assert "iso" in ds.items
        assert [t.tag_id for t in ds.tags] == ["urn:tag:1"]
        assert ds.pod is env.pod

    def test_full_run_restores_automation(self, env):
        env.pipeline().run()

        assert env.cluster.behavior == "fullyAutomated"
        assert env.pod.behavior == "automated"
        assert env.pod.io_load_balance is True
        assert env.current_source.sioc is True
        assert env.temp.sioc is False

    def test_checkpoints_strictly_increase_without_gaps(self, env):
        pipeline = env.pipeline()
        written = record_checkpoints(pipeline)
        pipeline.run()
        assert written == list(range(0, 22))

    def test_completion_archives_workflow(self, env):
        pipeline = env.pipeline()
        result = pipeline.run()

        assert not pipeline.state.exists()
        assert not pipeline.state.has_checkpoint()
        assert result.archive.endswith(".tar.gz")
        assert (env.settings.work_dir / "archive").is_dir()

    def test_volume_recreated_on_recorded_luns_and_hosts(self, env):
        env.pipeline().run()
        assert ("unmount", "ds-prod") in env.volumes.calls
        assert ("delete", "ds-prod") in env.volumes.calls
        assert ("create", "ds-prod", ("naa.600a", "naa.600b"), ("esx-01", "esx-02"), 6) in env.volumes.calls

    def test_existing_checkpoint_blocks_fresh_run(self, env):
        env.temp.items.append("leftover.iso")
        first = env.pipeline().run()
        assert not first.success

        second = env.pipeline().run()
        assert not second.success
        assert second.category == "PreconditionFailed"
        assert "--resume" in second.hint


# ═══════════════════════════════════════════════════════════════════
#  Failures
# ═══════════════════════════════════════════════════════════════════

class TestStageFailures:
    def test_precondition_failure_keeps_checkpoint(self, env):
        env.temp.items.append("leftover.iso")
        pipeline = env.pipeline()
        result = pipeline.run()

        assert not result.success
        assert result.failed_stage == "validate_temp_empty"
        assert result.category == "PreconditionFailed"
        assert "leftover.iso" in result.error
        assert pipeline.state.read_checkpoint() == 0
        assert env.inventory.calls == []

    def test_host_mismatch_fails_stage_two(self, env):
        env.temp.hosts = {"esx-01": True}
        result = env.pipeline().run()
        assert result.failed_stage == "validate_hosts"
        assert result.checkpoint == 1

    def test_replication_declined_fails_stage_two(self, env):
        env.source.vms[0].replicated = True
        questions = []
        result = env.pipeline(confirm=lambda q: questions.append(q) or False).run()

        assert result.failed_stage == "validate_hosts"
        assert result.checkpoint == 1
        assert len(questions) == 1

    def test_host_mismatch_skips_replication_prompt(self, env):
        env.source.vms[0].replicated = True
        env.temp.hosts = {"esx-01": True}
        questions = []
        result = env.pipeline(confirm=lambda q: questions.append(q) or True).run()

        assert result.failed_stage == "validate_hosts"
        assert questions == []

    def test_upgraded_source_fails_stage_five(self, env):
        env.source.version = 6
        result = env.pipeline().run()
        assert result.failed_stage == "validate_source_version"
        assert result.checkpoint == 4

    def test_replication_forced(self, env):
        env.source.vms[0].replicated = True
        result = env.pipeline(force=True).run()
        assert result.success, result.error

    def test_relocation_error_is_fatal(self, env):
        env.relocator.fail = {"vm-2"}
        pipeline = env.pipeline()
        result = pipeline.run()

        assert result.failed_stage == "evacuate_vms"
        assert result.category == "RelocationFailed"
        assert "vm-2" in result.error
        assert "--resume" in result.hint
        assert pipeline.state.read_checkpoint() == 8

    def test_swap_file_is_data_integrity_blocker(self, env):
        env.source.blockers = ["[ds-prod] vm-9/vm-9-a1b2.vswp"]
        result = env.pipeline().run()

        assert result.failed_stage == "evacuate_vms"
        assert result.category == "DataIntegrity"
        assert "vm-9-a1b2.vswp" in result.error
        assert "manually" in result.hint

    def test_snapshot_delta_blocks_orphan_copy(self, env):
        env.source.blockers = ["[ds-prod] old/old-000001-delta.vmdk"]
        result = env.pipeline().run()

        assert result.failed_stage == "evacuate_orphans"
        assert result.category == "DataIntegrity"
        assert result.checkpoint == 10

    def test_orphan_copy_failure(self, env):
        env.copier.fail = True
        result = env.pipeline().run()
        assert result.failed_stage == "evacuate_orphans"
        assert result.category == "OrphanCopyFailed"

    def test_unexpected_exception_becomes_fatal(self, env):
        env.volumes.unmount_error = RuntimeError("host esx-02 busy")
        result = env.pipeline().run()

        assert not result.success
        assert result.failed_stage == "unmount_source"
        assert result.category == "RuntimeError"
        assert result.error == "host esx-02 busy"
        assert result.checkpoint == 11

    def test_missing_artifact_is_fatal(self, env):
        pipeline = env.pipeline()
        store = ArtifactStore(pipeline.state.path)
        store.save(WorkflowIdentity(server="vc.example.com", datastore="ds-prod", temp_datastore="ds-temp"))
        pipeline.state.write_checkpoint(13)

        result = pipeline.run(resume=True)

        assert not result.success
        assert result.failed_stage == "create_target"
        assert result.category == "ArtifactMissing"
        assert "manual intervention" in result.hint
        assert pipeline.state.read_checkpoint() == 13


# ═══════════════════════════════════════════════════════════════════
#  Resume
# ═══════════════════════════════════════════════════════════════════

class TestResume:
    def test_resume_after_interruption(self, env):
        env.relocator.interrupt_on = ("ds-temp", "ds-prod")
        with pytest.raises(KeyboardInterrupt):
            env.pipeline().run()

        pipeline = env.pipeline()
        assert pipeline.state.read_checkpoint() == 15

        written = record_checkpoints(pipeline)
        result = pipeline.run(resume=True)

        assert result.success, result.error
        assert result.checkpoint == 21
        assert result.completed_stages[0] == "return_vms"
        assert written == [16, 17, 18, 19, 20, 21]
        assert sorted(env.inventory.vm_names_on(env.current_source)) == ["vm-1", "vm-2", "vm-3"]

    def test_resume_uses_captured_state(self, env):
        env.relocator.fail = {"vm-1"}
        env.pipeline().run()
        assert env.cluster.behavior == "manual"

        env.relocator.fail = set()
        result = env.pipeline().run(resume=True)

        assert result.success, result.error
        assert env.cluster.behavior == "fullyAutomated"

    def test_resume_after_precondition_fix(self, env):
        env.temp.items.append("leftover.iso")
        env.pipeline().run()

        env.temp.items.remove("leftover.iso")
        result = env.pipeline().run(resume=True)
        assert result.success, result.error

    def test_resume_with_wrong_temp_datastore(self, env):
        env.relocator.fail = {"vm-1"}
        env.pipeline().run()

        pipeline = env.pipeline()
        pipeline.temp_datastore = "ds-other"
        result = pipeline.run(resume=True)

        assert not result.success
        assert "ds-temp" in result.hint

    def test_resume_without_checkpoint(self, env):
        result = env.pipeline().run(resume=True)
        assert not result.success
        assert result.category == "PreconditionFailed"
        assert "nothing to resume" in result.error

    def test_missing_checkpoint_at_target_version_is_irrecoverable(self, env):
        env.source.version = 6
        result = env.pipeline().run(resume=True)
        assert not result.success
        assert result.category == "IrrecoverableState"

    def test_corrupt_checkpoint_after_delete_is_irrecoverable(self, env):
        env.volumes.unmount_error = RuntimeError("boom")
        pipeline = env.pipeline()
        pipeline.run()
        del env.inventory.datastores["ds-prod"]
        pipeline.state.checkpoint_path.write_text("garbage")

        result = env.pipeline().run(resume=True)
        assert result.category == "IrrecoverableState"

    def test_fresh_run_with_orphaned_identity_is_irrecoverable(self, env):
        pipeline = env.pipeline()
        ArtifactStore(pipeline.state.path).save(
            WorkflowIdentity(server="vc.example.com", datastore="ds-prod", temp_datastore="ds-temp")
        )
        env.source.version = 6

        result = pipeline.run()
        assert result.category == "IrrecoverableState"

    def test_resume_and_rollback_together(self, env):
        with pytest.raises(InvalidModeError):
            env.pipeline().run(resume=True, rollback=True)

    def test_locked_workflow(self, env, monkeypatch):
        import fcntl
        from vmfsupgrade.pipeline import state

        def busy(fd, op):
            if op & fcntl.LOCK_EX:
                raise BlockingIOError("locked")

        monkeypatch.setattr(state.fcntl, "lockf", busy)
        result = env.pipeline().run()

        assert not result.success
        assert result.category == "WorkflowLocked"


# ═══════════════════════════════════════════════════════════════════
#  Rollback
# ═══════════════════════════════════════════════════════════════════

class TestRollback:
    def test_rollback_before_stage_five_is_noop(self, env):
        env.temp.items.append("leftover.iso")
        pipeline = env.pipeline()
        pipeline.run()
        before = {p.name: p.stat().st_mtime_ns for p in pipeline.state.path.iterdir()}

        result = env.pipeline().run(rollback=True)

        assert result.success
        assert result.completed_stages == []
        after = {p.name: p.stat().st_mtime_ns for p in pipeline.state.path.iterdir()}
        assert after == before
        assert pipeline.state.read_checkpoint() == 0

    def test_rollback_reverses_reached_stages_in_order(self, env):
        env.volumes.unmount_error = RuntimeError("host busy")
        env.pipeline().run()

        pipeline = env.pipeline()
        written = record_checkpoints(pipeline)
        result = pipeline.run(rollback=True)

        assert result.success, result.error
        assert result.completed_stages == [
            "evacuate_vms", "evacuate_orphans", "disable_sdrs", "disable_sioc", "set_drs_manual",
        ]
        assert written == [8, 8, 7, 6, 5]
        assert result.checkpoint == 5
        assert not pipeline.state.exists()

    def test_rollback_restores_environment(self, env):
        env.volumes.unmount_error = RuntimeError("host busy")
        env.pipeline().run()
        env.pipeline().run(rollback=True)

        assert env.current_source is env.source
        assert sorted(env.inventory.vm_names_on(env.source)) == ["vm-1", "vm-2", "vm-3"]
        assert [t.name for t in env.inventory.templates_on(env.source)] == ["tpl-linux"]
        assert env.inventory.vm_names_on(env.temp) == []
        assert env.cluster.behavior == "fullyAutomated"
        assert env.pod.behavior == "automated"
        assert env.source.sioc is True
        assert ("ds-temp", "ds-prod") in env.copier.calls

    def test_rollback_skips_stages_not_reached(self, env, monkeypatch):
        def refuse(pod, behavior, io_load_balance):
            raise RuntimeError("pod busy")

        monkeypatch.setattr(env.inventory, "set_sdrs_config", refuse)
        first = env.pipeline().run()
        assert first.checkpoint == 7
        monkeypatch.undo()

        result = env.pipeline().run(rollback=True)

        assert result.success, result.error
        assert result.completed_stages == ["disable_sioc", "set_drs_manual"]
        assert env.relocator.calls == []

    def test_interrupted_rollback_continues(self, env):
        env.volumes.unmount_error = RuntimeError("host busy")
        env.pipeline().run()

        env.copier.fail = True
        pipeline = env.pipeline()
        failed = pipeline.run(rollback=True)
        assert not failed.success
        assert failed.failed_stage == "evacuate_orphans"
        assert pipeline.state.read_checkpoint() == 8
        progress = ArtifactStore(pipeline.state.path).load(RollbackProgress)
        assert progress.from_checkpoint == 11
        assert progress.reverted == [9]

        blocked = env.pipeline().run(resume=True)
        assert not blocked.success
        assert "--rollback" in blocked.hint

        env.copier.fail = False
        result = env.pipeline().run(rollback=True)
        assert result.success, result.error
        assert result.completed_stages == ["evacuate_orphans", "disable_sdrs", "disable_sioc", "set_drs_manual"]

    def test_rollback_without_checkpoint(self, env):
        result = env.pipeline().run(rollback=True)
        assert not result.success
        assert result.mode == Mode.ROLLBACK


# ═══════════════════════════════════════════════════════════════════
#  Failures outside any stage
# ═══════════════════════════════════════════════════════════════════

class TestFailuresOutsideStages:
    def expire_session(self, env, monkeypatch):
        def lost(name):
            raise ConnectionError("vCenter session expired")

        monkeypatch.setattr(env.inventory, "find_datastore", lost)

    def test_fresh_run_returns_failure(self, env, monkeypatch):
        self.expire_session(env, monkeypatch)
        pipeline = env.pipeline()
        result = pipeline.run()

        assert not result.success
        assert result.category == "ConnectionError"
        assert "session expired" in result.error
        assert result.checkpoint is None
        assert "re-run" in result.hint
        assert "vCenter session expired" in pipeline.state.log_path.read_text()

    def test_missing_checkpoint_lookup_returns_failure(self, env, monkeypatch):
        self.expire_session(env, monkeypatch)
        result = env.pipeline().run(resume=True)

        assert not result.success
        assert result.mode == Mode.RESUME
        assert result.category == "ConnectionError"

    def test_unreadable_rollback_progress(self, env):
        env.volumes.unmount_error = RuntimeError("host busy")
        pipeline = env.pipeline()
        pipeline.run()
        (pipeline.state.path / RollbackProgress.filename()).write_text("{not json")

        result = env.pipeline().run(rollback=True)

        assert not result.success
        assert result.category == "ArtifactMissing"
        assert "manual intervention" in result.hint
        assert result.checkpoint == 11


# ═══════════════════════════════════════════════════════════════════
#  Artifacts captured on the way
# ═══════════════════════════════════════════════════════════════════

class TestCapturedArtifacts:
    def test_snapshots_hold_pre_change_values(self, env):
        env.volumes.unmount_error = RuntimeError("host busy")
        pipeline = env.pipeline()
        pipeline.run()

        store = ArtifactStore(pipeline.state.path)
        assert store.load(DrsSnapshot).clusters == {"cl-prod": "fullyAutomated"}
        sdrs = store.load(SdrsSnapshot)
        assert sdrs.pod == "pod-gold"
        assert sdrs.default_vm_behavior == "automated"
        assert sdrs.io_load_balance_enabled is True

    def test_replayed_stage_keeps_original_snapshot(self, env):
        env.relocator.fail = {"vm-1"}
        pipeline = env.pipeline()
        pipeline.run()
        pipeline.state.write_checkpoint(5)

        result = env.pipeline().run(resume=True)
        assert not result.success

        store = ArtifactStore(pipeline.state.path)
        assert store.load(DrsSnapshot).clusters == {"cl-prod": "fullyAutomated"}
