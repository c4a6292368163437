import subprocess
from pathlib import Path

import pytest

from crate_apply import DockerEngine
from crate_apply.execution import docker_engine as docker_module
from crate_apply.execution.process import ProcessResult
from crate_apply.execution.types import ToolInvocation
from crate_apply.targets import Mode


def _request(tmp_path: Path, **overrides) -> ToolInvocation:
    working = tmp_path / "src" / "left_pad-1.0.0"
    working.mkdir(parents=True)
    values = dict(
        mode=Mode.TEST,
        working_dir=working,
        scratch_dir=tmp_path,
        timeout_seconds=30,
        memory_limit_mb=2048,
        cpu_limit_seconds=60,
        file_size_limit_mb=1,
        release=True,
        network=False,
    )
    values.update(overrides)
    return ToolInvocation(**values)


def test_docker_context_conflicts_with_docker_host() -> None:
    with pytest.raises(ValueError, match="either docker_context"):
        DockerEngine(docker_context="remote", docker_host="ssh://user@host")


def test_ssh_user_requires_ssh_host() -> None:
    with pytest.raises(ValueError, match="ssh_user requires ssh_host"):
        DockerEngine(ssh_user="alice")


def test_empty_image_is_rejected() -> None:
    with pytest.raises(ValueError, match="non-empty 'image'"):
        DockerEngine(image="  ")


def test_ssh_env_is_constructed() -> None:
    engine = DockerEngine(ssh_host="example.com", ssh_user="alice", ssh_port=2222, ssh_key_path="/k")
    env = engine._docker_env()  # noqa: SLF001 - validating internal connection config
    assert env["DOCKER_HOST"] == "ssh://alice@example.com"
    assert env["DOCKER_SSH_COMMAND"] == "ssh -p 2222 -i /k"


def test_run_command_applies_containment(tmp_path: Path) -> None:
    engine = DockerEngine(image="rust:1.80-slim", docker_context="builder", cpus=2)
    argv = engine.run_command(_request(tmp_path), "crate-apply-test")

    assert argv[:4] == ["docker", "--context", "builder", "run"]
    assert argv[-4:] == ["rust:1.80-slim", "cargo", "test", "--release"]
    joined = " ".join(argv)
    assert "--rm --name crate-apply-test" in joined
    assert "--cap-drop ALL" in joined
    assert "--network none" in joined
    assert "--memory 2048m --memory-swap 2048m" in joined
    assert "--ulimit cpu=60:65" in joined
    assert f"--ulimit fsize={1024 * 1024}:{1024 * 1024}" in joined
    assert "--cpus 2" in joined
    assert f"-v {tmp_path.resolve()}:/work" in joined
    assert "-w /work/src/left_pad-1.0.0" in joined
    assert "CARGO_HOME=/work/cargo-home" in argv


def test_run_command_without_limits_keeps_network(tmp_path: Path) -> None:
    request = _request(tmp_path, memory_limit_mb=0, cpu_limit_seconds=0, file_size_limit_mb=0, network=True)
    argv = DockerEngine().run_command(request, "n")
    assert "--network" not in argv
    assert "--memory" not in argv
    assert not any(item.startswith("cpu=") for item in argv)


def _patched_engine(monkeypatch: pytest.MonkeyPatch, result: ProcessResult) -> tuple[DockerEngine, list[list[str]]]:
    docker_calls: list[list[str]] = []

    def fake_run(cmd, **kwargs):
        docker_calls.append(list(cmd))
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(docker_module, "docker_is_available", lambda **kwargs: (True, None))
    monkeypatch.setattr(docker_module.subprocess, "run", fake_run)
    monkeypatch.setattr(docker_module, "run_bounded", lambda cmd, **kwargs: result)
    return DockerEngine(), docker_calls


def test_invoke_maps_signal_exit_codes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    engine, calls = _patched_engine(monkeypatch, ProcessResult(128 + 24, "Compiling", False, 2.0, 0))
    outcome = engine.invoke(_request(tmp_path))
    assert outcome.returncode == -24
    assert outcome.error is None
    assert calls[-1][:3] == ["docker", "rm", "-f"]


def test_invoke_reports_docker_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    engine, _ = _patched_engine(monkeypatch, ProcessResult(125, "", False, 0.1, 0))
    outcome = engine.invoke(_request(tmp_path))
    assert outcome.returncode == 125
    assert outcome.error == "docker daemon error"


def test_invoke_passes_through_cargo_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    engine, _ = _patched_engine(monkeypatch, ProcessResult(101, "error[E0432]", False, 4.0, 7))
    outcome = engine.invoke(_request(tmp_path))
    assert (outcome.returncode, outcome.error, outcome.truncated_bytes) == (101, None, 7)


def test_invoke_without_docker_reports_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(docker_module, "docker_is_available", lambda **kwargs: (False, "no daemon"))
    outcome = DockerEngine().invoke(_request(tmp_path))
    assert outcome.returncode == 125
    assert outcome.error == "no daemon"
