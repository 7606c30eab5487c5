"""Tests for the compilation validation adapter."""

from __future__ import annotations

from preview_host.managers.staging import ProjectStaging
from preview_host.managers.validator import (
    SubprocessValidator,
    failure_report,
    issues_from_output,
    stages_for,
)
from preview_host.models.preview import LogRing
from preview_host.models.schemas import ValidationConfig
from tests.conftest import FakeInstaller, FakeRunner, command_failed

TSC_OUTPUT = (
    "src/page.tsx(3,7): error TS2322: Type 'string' is not assignable to type 'number'.\n"
    "src/lib/util.ts(10,1): warning TS6133: 'x' is declared but never used.\n"
)


class TestStages:
    def test_all_enabled(self) -> None:
        names = [s.name for s in stages_for(ValidationConfig())]
        assert names == ["typescript", "eslint", "solidity", "build"]

    def test_respects_flags(self) -> None:
        config = ValidationConfig.model_validate({"enableTypeScript": False, "enableSolidity": False})
        assert [s.name for s in stages_for(config)] == ["eslint", "build"]


class TestIssuesFromOutput:
    def test_parses_tsc_diagnostics(self) -> None:
        issues = issues_from_output("typescript", TSC_OUTPUT)
        assert len(issues) == 2
        assert issues[0].file == "src/page.tsx"
        assert issues[0].line == 3
        assert issues[0].column == 7
        assert issues[0].severity == "error"
        assert issues[0].message.startswith("TS2322")
        assert issues[1].severity == "warning"

    def test_falls_back_to_log_extraction(self) -> None:
        issues = issues_from_output("build", "> next build\nError: Module not found: viem\n")
        assert len(issues) == 1
        assert issues[0].file == "build"
        assert issues[0].message == "Build Error: Module not found: viem"

    def test_empty_output(self) -> None:
        issues = issues_from_output("eslint", "")
        assert issues[0].message == "eslint failed"


class TestSubprocessValidator:
    async def test_reports_stage_failures(self, staging: ProjectStaging) -> None:
        runner = FakeRunner([command_failed("npx", 2, TSC_OUTPUT), None, None])
        validator = SubprocessValidator(runner, FakeInstaller(), staging, LogRing)  # type: ignore[arg-type]

        report = await validator.validate("app1", {"src/page.tsx": "x"}, ValidationConfig())

        assert not report.success
        assert [e.file for e in report.errors] == ["src/page.tsx"]
        assert [w.file for w in report.warnings] == ["src/lib/util.ts"]
        assert report.validation_summary.total_files == 1
        assert report.validation_summary.critical_errors == 1
        # No contracts directory in the template, so solidity is skipped
        assert len(runner.calls) == 3
        assert not staging.directory_for("app1-validate").exists()

    async def test_clean_project_passes(self, staging: ProjectStaging) -> None:
        runner = FakeRunner()
        validator = SubprocessValidator(runner, FakeInstaller(), staging, LogRing)  # type: ignore[arg-type]

        report = await validator.validate("app1", {}, ValidationConfig())

        assert report.success
        assert report.errors == []
        dumped = report.model_dump(by_alias=True)
        assert "compilationTime" in dumped
        assert "validationSummary" in dumped

    async def test_web3_runs_solidity_in_contracts(self, staging: ProjectStaging) -> None:
        runner = FakeRunner()
        validator = SubprocessValidator(runner, FakeInstaller(), staging, LogRing)  # type: ignore[arg-type]
        config = ValidationConfig.model_validate(
            {"enableTypeScript": False, "enableESLint": False, "enableBuild": False}
        )

        await validator.validate("app1", {}, config, is_web3=True)

        assert len(runner.calls) == 1
        assert runner.calls[0]["args"] == ["hardhat", "compile"]
        assert str(runner.calls[0]["cwd"]).endswith("app1-validate/contracts")

    def test_failure_report(self) -> None:
        report = failure_report("boom", 12)
        assert not report.success
        assert report.compilation_time == 12
        assert report.warnings[0].message == "Validation failed: boom"
