from __future__ import annotations

import sys
from pathlib import Path

import pytest
from pydantic import ValidationError


ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT / "move_fuzz" / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

import fuzz_cli
from fuzz_config import FuzzSettings, load_settings
from fuzz_errors import SubprocessFailure, WorkspaceNotFound
from fuzz_options import Build, Cmin, Coverage, Fmt, ListTargets, Run, Sanitizer, Tmin
from move_args import ArgKind


HOST = "x86_64-unknown-linux-gnu"


@pytest.fixture(autouse=True)
def _pin_default_target(monkeypatch):
    monkeypatch.setenv("MOVE_FUZZ_DEFAULT_TARGET", HOST)


def _command(*argv: str):
    ours, engine = fuzz_cli.split_engine_args(argv)
    ns = fuzz_cli.build_parser(FuzzSettings(default_target=HOST)).parse_args(ours)
    return fuzz_cli.command_from_namespace(ns, engine)


def test_split_engine_args():
    assert fuzz_cli.split_engine_args(["run", "a", "--", "-max_len=4", "--", "x"]) == (
        ["run", "a"],
        ["-max_len=4", "--", "x"],
    )
    assert fuzz_cli.split_engine_args(["list"]) == (["list"], [])


def test_run_command_line():
    cmd = _command("run", "a", "c1", "c2", "-j", "3", "-O", "--sanitizer=none", "--", "-max_len=10")
    assert isinstance(cmd, Run)
    assert cmd.target == "a"
    assert cmd.corpus == ["c1", "c2"]
    assert cmd.jobs == 3
    assert cmd.args == ["-max_len=10"]
    assert cmd.build.cargo_options.release
    assert cmd.build.cargo_options.sanitizer is Sanitizer.NONE
    assert cmd.build.cargo_options.triple == HOST
    assert cmd.fuzz_dir.fuzz_dir is None


def test_build_without_target_means_all():
    cmd = _command("build", "--fuzz-dir", "harness", "-Z", "build-std-features=x", "--careful")
    assert isinstance(cmd, Build)
    assert cmd.target is None
    assert cmd.fuzz_dir.fuzz_dir == Path("harness")
    assert cmd.build.cargo_options.unstable_flags == ["build-std-features=x"]
    assert cmd.build.cargo_options.uses_build_std


def test_other_subcommands():
    cmin = _command("cmin", "a", "corp", "--", "-rss_limit_mb=0")
    assert isinstance(cmin, Cmin)
    assert cmin.corpus == Path("corp")
    assert cmin.args == ["-rss_limit_mb=0"]

    tmin = _command("tmin", "a", "crash-1", "-r", "10")
    assert isinstance(tmin, Tmin)
    assert (tmin.test_case, tmin.runs) == (Path("crash-1"), 10)

    cov = _command("coverage", "a", "--llvm-path", "/opt/llvm/bin")
    assert isinstance(cov, Coverage)
    assert cov.llvm_path == Path("/opt/llvm/bin")
    assert cov.corpus == []

    fmt = _command("fmt", "a", "input.bin", "--arg-layout", "u8,bool,vector<u8>")
    assert isinstance(fmt, Fmt)
    assert fmt.arg_layout == [ArgKind.U8, ArgKind.BOOL, ArgKind.U8_VECTOR]

    assert isinstance(_command("list"), ListTargets)


def test_bad_arg_layout_and_sanitizer_are_usage_errors():
    with pytest.raises(SystemExit):
        _command("fmt", "a", "input.bin", "--arg-layout", "u9")
    with pytest.raises(SystemExit):
        _command("run", "a", "--sanitizer", "undefined")


def test_conflicting_flags_fail_validation():
    with pytest.raises(ValidationError):
        _command("build", "-D", "-O")


def test_main_exits_2_on_invalid_options(monkeypatch, capsys):
    monkeypatch.setattr(fuzz_cli, "run_command", lambda *a, **k: pytest.fail("should not run"))
    with pytest.raises(SystemExit) as exc:
        fuzz_cli.main(["build", "--all-features", "--no-default-features"])
    assert exc.value.code == 2
    assert "invalid options" in capsys.readouterr().err


def test_main_hands_command_and_settings_to_orchestrator(monkeypatch):
    seen = {}

    def fake_run(command, *, settings=None, cwd=None):
        seen["command"] = command
        seen["settings"] = settings

    monkeypatch.setattr(fuzz_cli, "run_command", fake_run)
    fuzz_cli.main(["run", "a", "--", "-runs=1"])
    assert isinstance(seen["command"], Run)
    assert seen["command"].args == ["-runs=1"]
    assert seen["settings"].default_target == HOST


@pytest.mark.parametrize(
    "error, code",
    [
        (SubprocessFailure(["cargo", "build"], exit_code=101), 101),
        (SubprocessFailure(["fuzz"], signal=11), 139),
        (WorkspaceNotFound("nowhere"), 1),
    ],
)
def test_main_maps_failures_to_exit_codes(monkeypatch, capsys, error, code):
    def fake_run(command, **kwargs):
        raise error

    monkeypatch.setattr(fuzz_cli, "run_command", fake_run)
    with pytest.raises(SystemExit) as exc:
        fuzz_cli.main(["build"])
    assert exc.value.code == code
    assert "[move-fuzz] ERROR:" in capsys.readouterr().err


def test_load_settings_reads_env_file(monkeypatch, tmp_path: Path):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "MOVE_FUZZ_CARGO=/opt/cargo/bin/cargo\nMOVE_FUZZ_LLVM_PATH=/opt/llvm/bin\nMOVE_FUZZ_DIR_NAME=fuzzing\n",
        encoding="utf-8",
    )
    # Registered so monkeypatch removes whatever load_dotenv sets.
    for name in ("MOVE_FUZZ_CARGO", "MOVE_FUZZ_LLVM_PATH", "MOVE_FUZZ_DIR_NAME"):
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)

    settings = load_settings(env_file)
    assert settings.cargo == "/opt/cargo/bin/cargo"
    assert settings.llvm_path == "/opt/llvm/bin"
    assert settings.fuzz_dir_name == "fuzzing"
    assert settings.default_target == HOST


def test_process_environment_wins_over_env_file(monkeypatch, tmp_path: Path):
    env_file = tmp_path / ".env"
    env_file.write_text("MOVE_FUZZ_FRONTEND=from-file\n", encoding="utf-8")
    monkeypatch.setenv("MOVE_FUZZ_FRONTEND", "cargo fuzz")
    assert load_settings(env_file).frontend == "cargo fuzz"


def test_load_settings_defaults(monkeypatch, tmp_path: Path):
    for name in ("MOVE_FUZZ_CARGO", "MOVE_FUZZ_LLVM_PATH", "MOVE_FUZZ_DIR_NAME", "MOVE_FUZZ_FRONTEND"):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings(tmp_path / "missing.env")
    assert settings.cargo == "cargo"
    assert settings.llvm_path is None
    assert settings.debug_path_env == "RUST_LIBFUZZER_DEBUG_PATH"
    assert settings.frontend == "move-fuzz"
