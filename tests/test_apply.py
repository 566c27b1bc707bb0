"""Tests for terrawatch.apply module."""

import asyncio
import json
from unittest.mock import patch

import pytest
from fakes import completed, fake_process, hook_event, plan_document

from terrawatch.apply import (
    ProgressReporter,
    WorkUpdate,
    _stream_apply,
    create_plan,
    define_work,
    event_to_update,
    parse_event,
    run_apply,
)
from terrawatch.command import build_command
from terrawatch.config import WatchConfig
from terrawatch.errors import ApplyError, PlanParseError
from terrawatch.plan import Action, ChangeDescriptor
from terrawatch.registry import Transition, WorkRegistry, WorkState
from terrawatch.runner import StreamingProcess, Terraform
from terrawatch.selectors import completed_work, defined_work, errored_work

PLAN = plan_document(
    ("aws_instance.web", ["create"]),
    ("aws_s3_bucket.logs", ["delete", "create"]),
    ("aws_iam_role.app", ["no-op"]),
)

INDEX = {
    ("aws_instance.web", "create"): 1,
    ("aws_s3_bucket.logs", "delete"): 2,
    ("aws_s3_bucket.logs", "create"): 3,
}


def _apply(tmp_path, lines, returncode=0, plan=PLAN, listener=None, eof=True, **config_kwargs):
    """Run run_apply against mocked plan/show/apply processes."""
    config = WatchConfig(working_dir=tmp_path, **config_kwargs)
    terraform = Terraform.from_config(config)
    registry = WorkRegistry()

    async def _run():
        with (
            patch("terrawatch.runner.subprocess.run") as mock_run,
            patch("terrawatch.runner.asyncio.create_subprocess_exec") as mock_cse,
        ):
            mock_run.side_effect = [completed(), completed(json.dumps(plan))]
            mock_cse.return_value = fake_process(lines, returncode, eof=eof)
            result = await run_apply(terraform, config, registry, listener)
            return result, mock_run, mock_cse

    result, mock_run, mock_cse = asyncio.run(_run())
    return result, registry, mock_run, mock_cse, config


# --- define_work ---


class TestDefineWork:
    def test_ids_count_up_from_one(self):
        registry = WorkRegistry()
        descriptors = [
            ChangeDescriptor("a.b", Action.CREATE),
            ChangeDescriptor("c.d", Action.DELETE),
            ChangeDescriptor("c.d", Action.CREATE),
        ]
        index = define_work(registry, descriptors)

        assert index == {("a.b", "create"): 1, ("c.d", "delete"): 2, ("c.d", "create"): 3}
        items = registry.snapshot()
        assert [(i.id, i.resource, i.work) for i in items] == [
            (1, "a.b", "create"),
            (2, "c.d", "delete"),
            (3, "c.d", "create"),
        ]
        assert all(i.state is WorkState.DEFINED for i in items)

    def test_duplicate_change_keeps_first_id(self):
        registry = WorkRegistry()
        descriptors = [ChangeDescriptor("a.b", Action.CREATE)] * 2
        index = define_work(registry, descriptors)
        assert index == {("a.b", "create"): 1}
        assert len(registry) == 2


# --- Events ---


class TestParseEvent:
    def test_json_object(self):
        line = hook_event("apply_start", "a.b", "create")
        assert parse_event(line)["type"] == "apply_start"

    def test_plain_text_ignored(self):
        assert parse_event("Apply complete! Resources: 1 added.") is None

    def test_malformed_json_ignored(self):
        assert parse_event("{not json") is None

    def test_blank_line(self):
        assert parse_event("") is None


class TestEventToUpdate:
    def test_start_is_run_at_zero(self):
        event = json.loads(hook_event("apply_start", "aws_instance.web", "create"))
        assert event_to_update(event, INDEX) == WorkUpdate(WorkState.RUNNING, 1, 0)

    def test_progress_carries_elapsed(self):
        event = json.loads(hook_event("apply_progress", "aws_instance.web", "create", 10))
        assert event_to_update(event, INDEX) == WorkUpdate(WorkState.RUNNING, 1, 10)

    def test_complete(self):
        event = json.loads(hook_event("apply_complete", "aws_s3_bucket.logs", "delete", 3))
        assert event_to_update(event, INDEX) == WorkUpdate(WorkState.COMPLETED, 2, 3)

    def test_errored_has_message(self):
        event = json.loads(hook_event("apply_errored", "aws_instance.web", "create", 5))
        update = event_to_update(event, INDEX)
        assert update.state is WorkState.ERROR
        assert update.duration == 5
        assert update.error == "aws_instance.web: apply_errored"

    def test_unknown_resource_keeps_key(self):
        event = json.loads(hook_event("apply_start", "aws_vpc.main", "create"))
        assert event_to_update(event, INDEX).id == ("aws_vpc.main", "create")

    def test_non_hook_messages_ignored(self):
        assert event_to_update({"type": "version", "terraform": "1.5.7"}, INDEX) is None
        assert event_to_update({"type": "change_summary", "changes": {}}, INDEX) is None


# --- ProgressReporter ---


class TestProgressReporter:
    def _registry(self) -> WorkRegistry:
        registry = WorkRegistry()
        registry.define(1, "a.b", "create")
        registry.define(2, "c.d", "create")
        return registry

    def test_applies_updates_in_order(self):
        registry = self._registry()
        seen = []

        async def _run():
            reporter = ProgressReporter(registry, listener=seen.append)
            reporter.start()
            reporter.post(WorkUpdate(WorkState.RUNNING, 1, 0))
            reporter.post(WorkUpdate(WorkState.RUNNING, 2, 0))
            reporter.post(WorkUpdate(WorkState.COMPLETED, 2, 4))
            reporter.post(WorkUpdate(WorkState.COMPLETED, 1, 9))
            await reporter.stop()

        asyncio.run(_run())
        assert [i.id for i in completed_work(registry)] == [2, 1]
        assert [(i.id, i.state) for i in seen] == [
            (1, WorkState.RUNNING),
            (2, WorkState.RUNNING),
            (2, WorkState.COMPLETED),
            (1, WorkState.COMPLETED),
        ]

    def test_counts_misses(self):
        registry = self._registry()
        reporter = ProgressReporter(registry)
        assert reporter.apply(WorkUpdate(WorkState.RUNNING, 99, 0)) is Transition.UNKNOWN_ID
        assert reporter.apply(WorkUpdate(WorkState.COMPLETED, 1, 0)) is Transition.REJECTED
        assert reporter.misses == 2

    def test_cannot_report_defined(self):
        reporter = ProgressReporter(self._registry())
        with pytest.raises(ValueError):
            reporter.apply(WorkUpdate(WorkState.DEFINED, 1, 0))

    def test_stop_without_start(self):
        asyncio.run(ProgressReporter(self._registry()).stop())


# --- create_plan ---


class TestCreatePlan:
    @patch("terrawatch.runner.subprocess.run")
    def test_plans_then_shows(self, mock_run, tmp_path):
        mock_run.side_effect = [completed(), completed(json.dumps(PLAN))]
        config = WatchConfig(
            working_dir=tmp_path,
            variables={"region": "eu-west-1"},
            var_files=["prod.tfvars"],
            targets=["aws_instance.web"],
        )
        descriptors = create_plan(Terraform.from_config(config), config)

        assert len(descriptors) == 4
        plan_argv = mock_run.call_args_list[0][0][0]
        assert plan_argv == [
            "terraform",
            "plan",
            "-var",
            "region=eu-west-1",
            "-var-file=prod.tfvars",
            "-target=aws_instance.web",
            "-input=false",
            f"-out={config.plan_file}",
        ]
        show_argv = mock_run.call_args_list[1][0][0]
        assert show_argv == ["terraform", "show", "-json", str(config.plan_file)]
        assert config.plan_file.parent.is_dir()

    @patch("terrawatch.runner.subprocess.run")
    def test_plan_failure_raises(self, mock_run, tmp_path):
        mock_run.return_value = completed("", "Error: Invalid provider", 1)
        config = WatchConfig(working_dir=tmp_path)
        with pytest.raises(ApplyError, match="Invalid provider") as excinfo:
            create_plan(Terraform.from_config(config), config)
        assert excinfo.value.returncode == 1

    @patch("terrawatch.runner.subprocess.run")
    def test_bad_plan_json_raises(self, mock_run, tmp_path):
        mock_run.side_effect = [completed(), completed("garbage")]
        config = WatchConfig(working_dir=tmp_path)
        with pytest.raises(PlanParseError):
            create_plan(Terraform.from_config(config), config)


# --- run_apply ---


class TestRunApply:
    def test_successful_apply(self, tmp_path):
        lines = [
            json.dumps({"type": "version", "terraform": "1.5.7"}),
            hook_event("apply_start", "aws_instance.web", "create"),
            hook_event("apply_start", "aws_s3_bucket.logs", "delete"),
            hook_event("apply_complete", "aws_s3_bucket.logs", "delete", 2),
            hook_event("apply_progress", "aws_instance.web", "create", 10),
            hook_event("apply_start", "aws_s3_bucket.logs", "create"),
            hook_event("apply_complete", "aws_s3_bucket.logs", "create", 3),
            hook_event("apply_complete", "aws_instance.web", "create", 12),
        ]
        result, registry, _, mock_cse, config = _apply(tmp_path, lines)

        assert result.ok
        assert result.returncode == 0
        completed_items = completed_work(registry)
        assert [(i.id, i.order) for i in completed_items] == [(2, 0), (3, 1), (1, 2)]
        assert completed_items[2].duration == 12
        assert [i.id for i in defined_work(registry)] == [4]
        assert result.summary.completed == 3
        assert mock_cse.call_args[0] == ("terraform", "apply", "-json", str(config.plan_file))
        assert result.command == f"terraform apply -json {config.plan_file}"

    def test_failed_apply_errors_running_items(self, tmp_path):
        lines = [
            hook_event("apply_start", "aws_instance.web", "create"),
            hook_event("apply_start", "aws_s3_bucket.logs", "delete"),
            hook_event("apply_errored", "aws_instance.web", "create", 5),
            json.dumps(
                {
                    "type": "diagnostic",
                    "diagnostic": {
                        "severity": "error",
                        "summary": "creating EC2 Instance: quota exceeded",
                        "address": "aws_instance.web",
                    },
                }
            ),
        ]
        result, registry, _, _, _ = _apply(tmp_path, lines, returncode=1)

        assert not result.ok
        assert result.returncode == 1
        errored = {i.id: i for i in errored_work(registry)}
        assert errored[1].error == "aws_instance.web: apply_errored"
        assert errored[2].error == "terraform apply exited with status 1"
        assert result.diagnostics == ["aws_instance.web: creating EC2 Instance: quota exceeded"]
        assert registry.get(3).state is WorkState.DEFINED

    def test_listener_sees_each_update(self, tmp_path):
        seen = []
        lines = [
            hook_event("apply_start", "aws_instance.web", "create"),
            hook_event("apply_complete", "aws_instance.web", "create", 1),
        ]
        _apply(tmp_path, lines, listener=seen.append)
        assert [(i.id, i.state) for i in seen] == [
            (1, WorkState.RUNNING),
            (1, WorkState.COMPLETED),
        ]

    def test_unknown_resource_events_counted_not_applied(self, tmp_path):
        lines = [hook_event("apply_start", "aws_vpc.other", "create")]
        result, registry, _, _, _ = _apply(tmp_path, lines)
        assert len(registry) == 4
        assert all(i.state is WorkState.DEFINED for i in registry.snapshot())

    def test_no_changes_skips_apply(self, tmp_path):
        plan = plan_document(("aws_iam_role.app", ["no-op"]))
        result, registry, _, mock_cse, _ = _apply(tmp_path, [], plan=plan)
        assert result.ok
        mock_cse.assert_not_called()
        assert len(registry) == 1

    def test_parallelism_passed(self, tmp_path):
        lines = [hook_event("apply_start", "aws_instance.web", "create")]
        _, _, _, mock_cse, config = _apply(tmp_path, lines, parallelism=4)
        assert mock_cse.call_args[0] == (
            "terraform",
            "apply",
            "-json",
            "-parallelism=4",
            str(config.plan_file),
        )


    def test_timeout_kills_and_errors_running_items(self, tmp_path):
        lines = [
            hook_event("apply_start", "aws_instance.web", "create"),
            hook_event("apply_start", "aws_s3_bucket.logs", "delete"),
            hook_event("apply_complete", "aws_s3_bucket.logs", "delete", 1),
        ]
        result, registry, _, mock_cse, _ = _apply(
            tmp_path, lines, returncode=-9, eof=False, apply_timeout_minutes=0.001
        )

        mock_cse.return_value.kill.assert_called_once()
        assert result.timed_out
        assert not result.ok
        web = registry.get(1)
        assert web.state is WorkState.ERROR
        assert web.error == "Timeout after 0.001 minutes"
        assert registry.get(2).state is WorkState.COMPLETED
        assert registry.get(3).state is WorkState.DEFINED

    def test_cancel_kills_and_errors_running_items(self, tmp_path):
        config = WatchConfig(working_dir=tmp_path)
        terraform = Terraform.from_config(config)
        registry = WorkRegistry()
        lines = [hook_event("apply_start", "aws_instance.web", "create")]

        async def _until_running():
            while True:
                item = registry.get(1)
                if item is not None and item.state is WorkState.RUNNING:
                    return
                await asyncio.sleep(0.01)

        async def _run():
            with (
                patch("terrawatch.runner.subprocess.run") as mock_run,
                patch("terrawatch.runner.asyncio.create_subprocess_exec") as mock_cse,
            ):
                mock_run.side_effect = [completed(), completed(json.dumps(PLAN))]
                mock_cse.return_value = fake_process(lines, -9, eof=False)
                task = asyncio.ensure_future(run_apply(terraform, config, registry))
                await asyncio.wait_for(_until_running(), 5)
                task.cancel()
                with pytest.raises(asyncio.CancelledError):
                    await task
                return mock_cse.return_value

        proc = asyncio.run(_run())
        proc.kill.assert_called_once()
        web = registry.get(1)
        assert web.state is WorkState.ERROR
        assert web.error == "apply interrupted"
        assert registry.get(2).state is WorkState.DEFINED

    def test_unlisted_plan_action_is_tracked(self, tmp_path):
        plan = plan_document(
            ("aws_instance.old", ["forget"]),
            ("aws_instance.web", ["create"]),
        )
        lines = [
            hook_event("apply_start", "aws_instance.web", "create"),
            hook_event("apply_complete", "aws_instance.web", "create", 4),
        ]
        result, registry, _, _, _ = _apply(tmp_path, lines, plan=plan)

        assert result.ok
        assert [(i.resource, i.work) for i in registry.snapshot()] == [
            ("aws_instance.old", "forget"),
            ("aws_instance.web", "create"),
        ]
        assert registry.get(2).state is WorkState.COMPLETED


class TestStreamApplyTimeout:
    def test_timeout_kills_process(self):
        async def _run():
            with patch("terrawatch.runner.asyncio.create_subprocess_exec") as mock_cse:
                proc = fake_process([])
                proc.stdout = asyncio.StreamReader()  # never reaches EOF
                mock_cse.return_value = proc
                registry = WorkRegistry()
                reporter = ProgressReporter(registry)
                process = StreamingProcess(build_command("terraform", "apply"))
                outcome, timed_out = await _stream_apply(process, {}, reporter, [], 0.05)
                proc.kill.assert_called_once()
                return timed_out

        assert asyncio.run(_run()) is True
