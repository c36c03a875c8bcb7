import logging
import os
import shutil
import tarfile
from pathlib import Path

import pytest

from flare.archive import list_members
from flare.dsl import flatten_command
from flare.errors import CaptureExecutionError, CopyPathError, IdentityResolutionError, ValidationError
from flare.model import Script
from flare.parser import parse
from flare.runner import Executor, execute


def _capture_file(result, node, cli):
    return result.workdir / node / f"{flatten_command(cli)}.txt"


def _copied(result, node, src):
    return result.workdir / node / src.relative_to(src.anchor)


# ---------------------------------------------------------------------
# CAPTURE
# ---------------------------------------------------------------------

def test_capture_single_command(defaults):
    scr = parse("CAPTURE /bin/echo 'HELLO WORLD'", defaults)
    result = execute(scr)

    out = _capture_file(result, "local", "/bin/echo 'HELLO WORLD'")
    assert out.name == "bin_echo_HELLO_WORLD.txt"
    assert out.read_bytes() == b"HELLO WORLD\n"
    assert result.captured == [out]
    assert [p.name for p in (result.workdir / "local").iterdir()] == [out.name]


def test_capture_multiple_commands(defaults):
    scr = parse("CAPTURE /bin/echo 'HELLO WORLD'\nCAPTURE ls .", defaults)
    result = execute(scr)

    first = _capture_file(result, "local", "/bin/echo 'HELLO WORLD'")
    second = _capture_file(result, "local", "ls .")
    assert first != second
    assert first.exists()
    assert second.exists()


def test_capture_as_current_user(defaults):
    scr = parse(f"AS {os.getuid()}\nCAPTURE /bin/echo 'HELLO WORLD'", defaults)
    result = execute(scr)
    assert _capture_file(result, "local", "/bin/echo 'HELLO WORLD'").exists()


def test_unknown_identity_aborts_before_side_effects(defaults, tmp_path):
    scr = parse("AS foo:barr\nCAPTURE /bin/echo 'HELLO WORLD'", defaults)
    with pytest.raises(IdentityResolutionError):
        execute(scr)
    assert not (tmp_path / "work").exists()
    assert not (tmp_path / "out.tar.gz").exists()


def test_capture_env_reaches_process(defaults):
    scr = parse("ENV FLARE_ONE=1\nENV vars:'FLARE_TWO=\"two words\"'\nCAPTURE env", defaults)
    result = execute(scr)
    text = _capture_file(result, "local", "env").read_text()
    assert "FLARE_ONE=1\n" in text
    assert "FLARE_TWO=two words\n" in text


def test_capture_failing_command_is_fatal(defaults, tmp_path):
    scr = parse("CAPTURE /bin/sh -c 'exit 3'\nCAPTURE /bin/echo later", defaults)
    with pytest.raises(CaptureExecutionError) as exc:
        execute(scr)
    assert exc.value.line == 1
    assert exc.value.details["exit_code"] == "3"
    assert not (tmp_path / "work" / "local" / "bin_echo_later.txt").exists()


def test_capture_names_that_flatten_alike_stay_distinct(defaults):
    scr = parse("CAPTURE /bin/echo a/b\nCAPTURE /bin/echo a_b\nCAPTURE /bin/echo a/b", defaults)
    result = execute(scr)

    node_dir = result.workdir / "local"
    assert result.captured == [
        node_dir / "bin_echo_a_b.txt",
        node_dir / "bin_echo_a_b_L2.txt",
        node_dir / "bin_echo_a_b_L3.txt",
    ]
    assert [p.read_text() for p in result.captured] == ["a/b\n", "a_b\n", "a/b\n"]


def test_numeric_identity_out_of_range(defaults, tmp_path):
    scr = parse("AS 99999999999999999999:0\nCAPTURE /bin/echo hi", defaults)
    with pytest.raises(IdentityResolutionError, match="out of range") as exc:
        execute(scr)
    assert exc.value.line == 1
    assert not (tmp_path / "work").exists()


def test_capture_missing_program_is_fatal(defaults):
    scr = parse("CAPTURE ./ffoobarr", defaults)
    with pytest.raises(CaptureExecutionError, match="cannot start"):
        execute(scr)


# ---------------------------------------------------------------------
# COPY
# ---------------------------------------------------------------------

def _tree(root):
    (root / "sub" / "deeper").mkdir(parents=True)
    (root / "a.txt").write_text("top level\n")
    (root / "sub" / "a.txt").write_text("same name, other dir\n")
    (root / "sub" / "deeper" / "b.bin").write_bytes(os.urandom(4096))
    return root


def test_copy_preserves_structure(defaults, tmp_path):
    src = _tree(tmp_path / "src")
    scr = parse(f"COPY {src}", defaults)
    result = execute(scr)

    dest = _copied(result, "local", src)
    for rel in ("a.txt", "sub/a.txt", "sub/deeper/b.bin"):
        assert (dest / rel).read_bytes() == (src / rel).read_bytes()
        assert (dest / rel).stat().st_size == (src / rel).stat().st_size
    assert len(result.copied) == 3
    assert result.copy_errors == []


def test_copy_single_file(defaults, tmp_path):
    src = tmp_path / "notes.txt"
    src.write_text("hello\n")
    result = execute(parse(f"COPY paths:{src}", defaults))
    assert _copied(result, "local", src).read_text() == "hello\n"


def test_copy_sources_with_same_name_do_not_collide(defaults, tmp_path):
    etc = tmp_path / "etc" / "config"
    var = tmp_path / "var" / "config"
    for src, text in ((etc, "ETC\n"), (var, "VAR\n")):
        src.mkdir(parents=True)
        (src / "f.txt").write_text(text)

    result = execute(parse(f"COPY {etc} {var}", defaults))

    assert (_copied(result, "local", etc) / "f.txt").read_text() == "ETC\n"
    assert (_copied(result, "local", var) / "f.txt").read_text() == "VAR\n"
    assert len(set(result.copied)) == 2


def test_copy_size_mismatch_fails_that_path_only(defaults, tmp_path, monkeypatch):
    short = _tree(tmp_path / "short")
    good = _tree(tmp_path / "good")
    real_copyfile = shutil.copyfile

    def truncating_copyfile(src, dst, *args, **kwargs):
        if Path(src) == short / "a.txt":
            Path(dst).write_text("top")
            return dst
        return real_copyfile(src, dst, *args, **kwargs)

    monkeypatch.setattr(shutil, "copyfile", truncating_copyfile)
    result = execute(parse(f"COPY {short} {good}", defaults))

    assert len(result.copy_errors) == 1
    err = result.copy_errors[0]
    assert isinstance(err, CopyPathError)
    assert "copy did not complete" in err.message
    assert err.details == {"expected": "10", "written": "3"}
    for rel in ("a.txt", "sub/a.txt", "sub/deeper/b.bin"):
        assert (_copied(result, "local", good) / rel).exists()


@pytest.mark.parametrize("inside", ["", "nested"])
def test_copy_of_workdir_is_skipped(defaults, tmp_path, caplog, inside):
    workdir = tmp_path / "work"
    (workdir / "nested").mkdir(parents=True)
    (workdir / "nested" / "f.txt").write_text("x")
    other = _tree(tmp_path / "other")

    scr = parse(f"COPY {workdir / inside}\nCOPY {other}\nCAPTURE /bin/echo done", defaults)
    with caplog.at_level(logging.ERROR, logger="flare"):
        result = execute(scr)

    assert len(result.copy_errors) == 1
    assert result.copy_errors[0].line == 1
    assert "cannot be relative to workdir" in caplog.text
    assert (_copied(result, "local", other) / "sub" / "a.txt").exists()
    assert _capture_file(result, "local", "/bin/echo done").exists()


def test_copy_of_workdir_parent_does_not_recurse(tmp_path):
    base = _tree(tmp_path / "base")
    workdir = base / "work"
    text = f"WORKDIR path:{workdir}\nOUTPUT path:{tmp_path / 'b.tar.gz'}\nCOPY {base}"
    result = execute(parse(text))

    dest = _copied(result, "local", base)
    assert (dest / "sub" / "deeper" / "b.bin").exists()
    assert not (dest / "work").exists()


def test_copy_error_is_per_path(defaults, tmp_path):
    bad = _tree(tmp_path / "bad")
    os.symlink(bad / "a.txt", bad / "link")
    good = _tree(tmp_path / "good")

    scr = parse(f"COPY {bad} {tmp_path / 'missing'} {good}", defaults)
    result = execute(scr)

    assert len(result.copy_errors) == 2
    assert "unknown file type" in result.copy_errors[0].message
    assert (_copied(result, "local", good) / "sub" / "deeper" / "b.bin").exists()


# ---------------------------------------------------------------------
# Nodes, delegates, bundle
# ---------------------------------------------------------------------

def test_output_is_namespaced_per_node(defaults):
    scr = parse("FROM hosts:'local 10.0.0.7'\nCAPTURE /bin/echo hi", defaults)
    result = execute(scr)
    assert _capture_file(result, "local", "/bin/echo hi").exists()
    assert _capture_file(result, "10.0.0.7", "/bin/echo hi").exists()
    assert len(result.captured) == 2


def test_run_and_kubeget_go_to_delegates(defaults):
    seen = []
    delegates = {
        "RUN": lambda node, cmd, script: seen.append((str(node), cmd.name, cmd.cli)),
        "KUBEGET": lambda node, cmd, script: seen.append((str(node), cmd.name, cmd.what)),
    }
    scr = parse("RUN systemctl restart kubelet\nKUBEGET what:logs\n", defaults)
    result = Executor(scr, delegates=delegates).execute()

    assert seen == [
        ("local", "RUN", "systemctl restart kubelet"),
        ("local", "KUBEGET", "logs"),
    ]
    assert result.delegated == [("local", 1), ("local", 2)]


def test_run_without_delegate_is_skipped(defaults):
    result = execute(parse("RUN /bin/false", defaults))
    assert result.delegated == []


def test_bundle_written_to_output(defaults, tmp_path):
    scr = parse("CAPTURE /bin/echo 'HELLO WORLD'", defaults)
    result = execute(scr)

    assert result.archive == tmp_path / "out.tar.gz"
    members = list_members(result.archive)
    assert "work/local/bin_echo_HELLO_WORLD.txt" in members
    assert "work/flare_manifest.json" in members
    with tarfile.open(result.archive, "r:gz") as tar:
        data = tar.extractfile("work/local/bin_echo_HELLO_WORLD.txt").read()
    assert data == b"HELLO WORLD\n"


def test_no_archive(defaults, tmp_path):
    result = execute(parse("CAPTURE /bin/echo x", defaults), archive=False)
    assert result.archive is None
    assert not (tmp_path / "out.tar.gz").exists()


def test_missing_preambles_are_rejected():
    with pytest.raises(ValidationError, match="missing valid"):
        execute(Script())
