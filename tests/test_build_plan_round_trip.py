from __future__ import annotations

import sys
from pathlib import Path

import pytest
from pydantic import ValidationError


ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT / "move_fuzz" / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

import build_plan as bp
from fuzz_config import FuzzSettings
from fuzz_errors import ConfigurationConflict, MalformedRoundTrip
from fuzz_options import BuildOptions, CargoBuildConfig, Sanitizer


HOST = "x86_64-unknown-linux-gnu"


@pytest.fixture(autouse=True)
def _pin_default_target(monkeypatch):
    monkeypatch.setenv("MOVE_FUZZ_DEFAULT_TARGET", HOST)


def _opts(*, dev: bool = False, verbose: bool = False, **cargo) -> BuildOptions:
    return BuildOptions(dev=dev, verbose=verbose, cargo_options=CargoBuildConfig(**cargo))


ROUND_TRIP_CASES = [
    _opts(),
    _opts(dev=True),
    _opts(verbose=True),
    _opts(release=True),
    _opts(debug_assertions=True),
    _opts(no_default_features=True),
    _opts(all_features=True),
    _opts(features="features"),
    _opts(features=""),
    _opts(sanitizer=Sanitizer.ADDRESS),
    _opts(sanitizer=Sanitizer.LEAK),
    _opts(sanitizer=Sanitizer.MEMORY),
    _opts(sanitizer=Sanitizer.THREAD),
    _opts(sanitizer=Sanitizer.NONE),
    _opts(build_std=True),
    _opts(careful_mode=True),
    _opts(coverage=True),
    _opts(strip_dead_code=True),
    _opts(no_cfg_fuzzing=True),
    _opts(no_trace_compares=True),
    _opts(triple="custom_triple"),
    _opts(unstable_flags=["unstable", "flags"]),
    _opts(unstable_flags=["x=", "a=b=c"]),
    _opts(cargo_home="/opt/cargo home", cargo_target_dir="/tmp/target"),
    _opts(
        dev=True,
        verbose=True,
        debug_assertions=True,
        all_features=True,
        sanitizer=Sanitizer.NONE,
        careful_mode=True,
        strip_dead_code=True,
        no_cfg_fuzzing=True,
        no_trace_compares=True,
        triple="aarch64-apple-darwin",
        unstable_flags=["b", "a", "b"],
        cargo_home="/h",
        cargo_target_dir="/t",
    ),
    _opts(release=True, features="a,b", sanitizer=Sanitizer.THREAD, coverage=True, unstable_flags=["x=1"]),
]


@pytest.mark.parametrize("case", ROUND_TRIP_CASES)
def test_parse_of_render_is_identity(case: BuildOptions):
    tokens = bp.render_build_options(case, default_triple=HOST)
    assert bp.parse_build_options(tokens, default_triple=HOST) == case
    assert bp.check_round_trip(case, default_triple=HOST) == tokens


def test_default_options_render_to_nothing():
    assert bp.render_build_options(_opts(), default_triple=HOST) == []
    assert bp.format_build_options(_opts(), default_triple=HOST) == ""


def test_address_sanitizer_is_elided():
    tokens = bp.render_build_options(_opts(sanitizer=Sanitizer.ADDRESS), default_triple=HOST)
    assert not any(t.startswith("--sanitizer") for t in tokens)


def test_none_sanitizer_is_explicit():
    tokens = bp.render_build_options(_opts(sanitizer=Sanitizer.NONE), default_triple=HOST)
    assert "--sanitizer=none" in tokens


def test_host_triple_is_elided_and_other_triples_are_not():
    assert bp.render_build_options(_opts(triple=HOST), default_triple=HOST) == []
    assert bp.render_build_options(_opts(triple="wasm32-unknown-unknown"), default_triple=HOST) == [
        "--target=wasm32-unknown-unknown"
    ]
    # Elision follows the injected default, not the process environment.
    assert bp.render_build_options(_opts(triple=HOST), default_triple="other") == [f"--target={HOST}"]


def test_render_order_is_canonical():
    opts = _opts(
        verbose=True,
        release=True,
        no_default_features=True,
        sanitizer=Sanitizer.LEAK,
        triple="t",
        cargo_home="/h",
        cargo_target_dir="/d",
        unstable_flags=["one", "two"],
    )
    assert bp.render_build_options(opts, default_triple=HOST) == [
        "--sanitizer=leak",
        "-O",
        "-v",
        "--no-default-features",
        "--target=t",
        "--cargo-home=/h",
        "--cargo-target-dir=/d",
        "-Zone",
        "-Ztwo",
    ]


def test_format_build_options_quotes_for_the_shell():
    assert bp.format_build_options(_opts(cargo_home="/a b"), default_triple=HOST) == " '--cargo-home=/a b'"


def test_parse_rejects_unknown_tokens_and_sanitizers():
    with pytest.raises(ValueError):
        bp.parse_build_options(["--frobnicate"], default_triple=HOST)
    with pytest.raises(ValueError):
        bp.parse_build_options(["--sanitizer=undefined"], default_triple=HOST)


def test_parse_rejects_conflicting_tokens():
    with pytest.raises(ValidationError):
        bp.parse_build_options(["-O", "-D"], default_triple=HOST)
    with pytest.raises(ValidationError):
        bp.parse_build_options(["--all-features", "--features=x"], default_triple=HOST)


def test_check_round_trip_flags_a_value_that_cannot_reparse():
    # model_copy skips validation, so this value is not legally constructed.
    broken = _opts(release=True).model_copy(update={"dev": True})
    with pytest.raises(MalformedRoundTrip):
        bp.check_round_trip(broken, default_triple=HOST)


def test_validate_rejects_coverage_with_build_std():
    with pytest.raises(ConfigurationConflict):
        bp.validate_build_options(_opts(build_std=True, coverage=True))
    with pytest.raises(ConfigurationConflict, match="careful"):
        bp.validate_build_options(_opts(careful_mode=True).with_coverage())
    bp.validate_build_options(_opts(coverage=True))


def test_validate_catches_conflicts_smuggled_past_construction():
    cargo = CargoBuildConfig(all_features=True).model_copy(update={"no_default_features": True})
    # The outer model would re-validate the nested one, so copy it in as well.
    smuggled = BuildOptions().model_copy(update={"cargo_options": cargo})
    with pytest.raises(ConfigurationConflict, match="mutually exclusive"):
        bp.validate_build_options(smuggled)


def _settings() -> FuzzSettings:
    return FuzzSettings(cargo="cargo", default_target=HOST)


def test_compile_build_plan_argv_and_env(tmp_path: Path):
    opts = _opts(release=True, sanitizer=Sanitizer.NONE, features="f1", unstable_flags=["x"])
    plan = bp.compile_plan(
        "build",
        opts,
        manifest_path=tmp_path / "Cargo.toml",
        settings=_settings(),
        target="a",
        base_env={"RUSTFLAGS": "-Cfoo"},
    )
    assert plan.argv == [
        "cargo", "build", "--manifest-path", str(tmp_path / "Cargo.toml"), "--target", HOST,
        "--release", "--features", "f1", "-Z", "x", "--bin", "a",
    ]
    rustflags = plan.env["RUSTFLAGS"]
    assert rustflags.startswith("-Cpasses=sancov-module")
    assert "-Zsanitizer" not in rustflags
    assert "--cfg fuzzing" in rustflags
    assert "-Clink-dead-code" in rustflags
    assert "-Cllvm-args=-sanitizer-coverage-trace-compares" in rustflags
    assert "-Cllvm-args=-sanitizer-coverage-stack-depth" in rustflags
    assert "-Cdebug-assertions" not in rustflags
    assert rustflags.endswith("-Cfoo")
    assert plan.cwd == tmp_path
    assert plan.rendered == ["--sanitizer=none", "-O", "--features=f1", "-Zx"]


def test_compile_plan_flags_follow_options(tmp_path: Path):
    opts = _opts(
        dev=True,
        careful_mode=True,
        no_trace_compares=True,
        no_cfg_fuzzing=True,
        strip_dead_code=True,
        sanitizer=Sanitizer.MEMORY,
        cargo_home="/ch",
        cargo_target_dir="/ct",
    )
    plan = bp.compile_plan("check", opts, manifest_path=tmp_path / "Cargo.toml", settings=_settings(), base_env={})
    assert "--release" not in plan.argv
    assert "-Zbuild-std" in plan.argv
    assert plan.argv[-1] == "--bins"
    rustflags = plan.env["RUSTFLAGS"]
    assert "-Zsanitizer=memory -Zsanitizer-memory-track-origins" in rustflags
    assert "-Zextra-const-ub-checks" in rustflags
    assert "-Cdebug-assertions" in rustflags
    assert "trace-compares" not in rustflags
    assert "--cfg fuzzing" not in rustflags
    assert "-Clink-dead-code" not in rustflags
    assert plan.env["CARGO_HOME"] == "/ch"
    assert plan.env["CARGO_TARGET_DIR"] == "/ct"


def test_compile_run_plan_passes_artifact_prefix_to_engine(tmp_path: Path):
    artifacts = tmp_path / "artifacts" / "a"
    plan = bp.compile_plan(
        "run", _opts(coverage=True), manifest_path=tmp_path / "Cargo.toml", settings=_settings(),
        target="a", artifacts_dir=artifacts, base_env={},
    )
    sep = plan.argv.index("--")
    assert plan.argv[sep - 2 : sep] == ["--bin", "a"]
    assert plan.argv[sep + 1].startswith(f"-artifact_prefix={artifacts}")
    assert "-Cinstrument-coverage" in plan.env["RUSTFLAGS"]


def test_compile_plan_refuses_conflicts_before_producing_anything(tmp_path: Path):
    with pytest.raises(ConfigurationConflict):
        bp.compile_plan(
            "build", _opts(build_std=True, coverage=True), manifest_path=tmp_path / "Cargo.toml",
            settings=_settings(), base_env={},
        )


@pytest.mark.parametrize("flag", ["", "=x", "=="])
def test_unstable_flags_that_cannot_reparse_are_rejected(flag: str):
    with pytest.raises(ValidationError, match="invalid unstable flag"):
        CargoBuildConfig(unstable_flags=["ok", flag])
