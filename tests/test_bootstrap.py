import json
import subprocess
from pathlib import Path

import pytest

from shipwright import bootstrap
from shipwright.bootstrap import (
    BootstrapRequest,
    GhRepoBootstrapper,
    detect_owner,
    file_tree,
    key_config_files,
    resolve_workspace,
    slugify,
    summarize_repo_baseline,
)
from shipwright.errors import BootstrapError, ConfigurationError


def _completed(args: list[str], returncode: int = 0, stdout: str = "", stderr: str = ""):
    return subprocess.CompletedProcess(args, returncode, stdout=stdout, stderr=stderr)


def _request(tmp_path: Path, **overrides: object) -> BootstrapRequest:
    values: dict[str, object] = {
        "repo_name": "habit-tracker",
        "owner": "acme",
        "template": "acme/web-template",
        "workspace": tmp_path / "workspaces" / "habit-tracker",
        "visibility": "private",
    }
    values.update(overrides)
    return BootstrapRequest(**values)  # type: ignore[arg-type]


def test_slugify() -> None:
    assert slugify("A Habit Tracker -- for Teams!") == "a-habit-tracker-for-teams"
    assert slugify("x" * 60 + " tail") == "x" * 50
    assert slugify("Ship it " * 10, max_length=12) == "ship-it-ship"


def test_resolve_workspace_stays_under_root(tmp_path: Path) -> None:
    root = tmp_path / "workspaces"
    root.mkdir()

    assert resolve_workspace(root, "habit-tracker") == (root / "habit-tracker").resolve()

    with pytest.raises(ConfigurationError):
        resolve_workspace(root, "../escape")


def test_resolve_workspace_rejects_symlink_escape(tmp_path: Path) -> None:
    root = tmp_path / "workspaces"
    root.mkdir()
    outside = tmp_path / "elsewhere"
    outside.mkdir()
    (root / "linked").symlink_to(outside, target_is_directory=True)

    with pytest.raises(ConfigurationError, match="outside"):
        resolve_workspace(root, "linked")


def test_gh_creates_and_clones(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[list[str], Path]] = []

    def fake_run(args: list[str], cwd: Path, text: bool, capture_output: bool):
        calls.append((args, cwd))
        (cwd / args[3].split("/")[1]).mkdir()
        return _completed(args)

    monkeypatch.setattr(bootstrap.subprocess, "run", fake_run)
    request = _request(tmp_path)

    result = GhRepoBootstrapper().bootstrap(request)

    assert calls == [
        (
            [
                "gh",
                "repo",
                "create",
                "acme/habit-tracker",
                "--template",
                "acme/web-template",
                "--private",
                "--clone",
            ],
            tmp_path / "workspaces",
        )
    ]
    assert result.workspace == request.workspace
    assert result.repo_url == "https://github.com/acme/habit-tracker"


def test_gh_failure_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        bootstrap.subprocess,
        "run",
        lambda args, **kwargs: _completed(args, 1, stderr="Name already exists on this account"),
    )

    with pytest.raises(BootstrapError, match="already exists"):
        GhRepoBootstrapper().bootstrap(_request(tmp_path))


def test_missing_gh_binary(tmp_path: Path) -> None:
    with pytest.raises(BootstrapError, match="not found"):
        GhRepoBootstrapper(binary="shipwright-missing-gh").bootstrap(_request(tmp_path))


def test_success_without_clone_is_an_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(bootstrap.subprocess, "run", lambda args, **kwargs: _completed(args))

    with pytest.raises(BootstrapError, match="not cloned"):
        GhRepoBootstrapper().bootstrap(_request(tmp_path))


@pytest.mark.parametrize(
    "overrides",
    [
        {"owner": "bad owner"},
        {"repo_name": "bad/name"},
        {"template": "no-slash"},
        {"visibility": "internal"},
    ],
)
def test_bootstrap_validates_inputs(tmp_path: Path, overrides: dict[str, object]) -> None:
    with pytest.raises(ConfigurationError):
        GhRepoBootstrapper().bootstrap(_request(tmp_path, **overrides))


def test_existing_workspace_is_refused(tmp_path: Path) -> None:
    request = _request(tmp_path)
    request.workspace.mkdir(parents=True)

    with pytest.raises(BootstrapError, match="already exists"):
        GhRepoBootstrapper().bootstrap(request)


def test_detect_owner(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        bootstrap.subprocess, "run", lambda args, **kwargs: _completed(args, stdout="acme\n")
    )
    assert detect_owner() == "acme"

    monkeypatch.setattr(
        bootstrap.subprocess, "run", lambda args, **kwargs: _completed(args, 1, stderr="auth")
    )
    with pytest.raises(BootstrapError, match="--owner"):
        detect_owner()


def _template_repo(root: Path) -> Path:
    (root / "apps" / "web" / "src" / "app" / "deep").mkdir(parents=True)
    (root / "apps" / "web" / "src" / "app" / "deep" / "page.tsx").write_text("x", encoding="utf-8")
    (root / "apps" / "web" / "package.json").write_text(
        json.dumps({"name": "web"}), encoding="utf-8"
    )
    (root / "node_modules" / "left-pad").mkdir(parents=True)
    (root / ".git").mkdir()
    (root / "package.json").write_text(json.dumps({"name": "template"}), encoding="utf-8")
    (root / "README.md").write_text(
        "# Template\n\n" + "\n".join(f"line {index}" for index in range(250)), encoding="utf-8"
    )
    return root


def test_file_tree_prunes_excluded_and_deep_entries(tmp_path: Path) -> None:
    tree = file_tree(_template_repo(tmp_path))

    assert "./apps/web/src/app" in tree
    assert "./apps/web/package.json" in tree
    assert "./apps/web/src/app/deep" not in tree
    assert not any("node_modules" in entry or ".git" in entry for entry in tree)
    assert tree == sorted(tree)


def test_key_config_files_include_monorepo_packages(tmp_path: Path) -> None:
    configs = key_config_files(_template_repo(tmp_path))

    assert list(configs) == ["package.json", "README.md", "apps/web/package.json"]
    assert "(truncated, 252 total lines)" in configs["README.md"]


def test_baseline_summary_sections(tmp_path: Path) -> None:
    summary = summarize_repo_baseline(_template_repo(tmp_path))

    assert summary.startswith("# Repo Baseline Summary\n")
    assert "## File Tree" in summary
    assert "### apps/web/package.json" in summary
    assert "```json" in summary
    assert "## README Excerpts" in summary
    assert "line 197" in summary
    assert "line 198" not in summary
