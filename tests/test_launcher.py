import importlib.util
from pathlib import Path

import pytest

from cue import ScriptConfig

# The launcher shares its name with the package, so load it from its path
_launcher_spec = importlib.util.spec_from_file_location("cue_launcher", Path(__file__).resolve().parent.parent / "cue.py")
launcher = importlib.util.module_from_spec(_launcher_spec)
_launcher_spec.loader.exec_module(launcher)


def test_parse_args():
    assert launcher.parse_args([]) == (None, None, False)
    assert launcher.parse_args(["job.cue"]) == ("job.cue", None, False)
    assert launcher.parse_args(["--list", "--config", "c.yaml", "job.cue"]) == ("job.cue", "c.yaml", True)


def test_parse_args_rejects_bad_usage(capsys):
    with pytest.raises(SystemExit) as excinfo:
        launcher.parse_args(["--config"])
    assert excinfo.value.code == 2
    with pytest.raises(SystemExit):
        launcher.parse_args(["--verbose"])
    assert "usage:" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_list_prints_compiled_script(tmp_path, capsys):
    script = tmp_path / "job.cue"
    script.write_text("label top\n// comment\nlog hi\n", encoding="utf-8")
    await launcher.run_script_file(str(script), ScriptConfig(), list_only=True)
    assert capsys.readouterr().out == "0  label top\n1  log hi\n"


@pytest.mark.asyncio
async def test_run_prints_log_messages(tmp_path, capsys):
    script = tmp_path / "job.cue"
    script.write_text("for i 1...2\nlog step {{i}}\nendfor i\n", encoding="utf-8")
    await launcher.run_script_file(str(script), ScriptConfig())
    assert capsys.readouterr().out == "step 1\nstep 2\n"


@pytest.mark.asyncio
async def test_run_exits_with_error_status(tmp_path, capsys):
    script = tmp_path / "job.cue"
    script.write_text("log ok\nbogus\n", encoding="utf-8")
    with pytest.raises(SystemExit) as excinfo:
        await launcher.run_script_file(str(script), ScriptConfig())
    assert excinfo.value.code == 1
    assert "Error on line 2" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_missing_file(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        await launcher.run_script_file(str(tmp_path / "absent.cue"), ScriptConfig())
    assert excinfo.value.code == 1
