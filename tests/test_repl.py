import importlib.util
import sys
from pathlib import Path
import uuid
import pytest

def _load_repl_module():
    """Dynamically load the top-level expcalc.py (REPL) as a module with a unique name."""
    repl_path = Path(__file__).resolve().parents[1] / "expcalc.py"
    mod_name = f"expcalc_repl_for_test_{uuid.uuid4().hex}"
    spec = importlib.util.spec_from_file_location(mod_name, str(repl_path))
    mod = importlib.util.module_from_spec(spec)
    sys.modules[mod_name] = mod
    assert spec.loader is not None
    spec.loader.exec_module(mod)
    return mod

@pytest.fixture(autouse=True)
def clean_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("EXPCALC_MAX_DEPTH", "EXPCALC_CONTEXT", "EXPCALC_FORMAT", "EXPCALC_DEBUG"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(sys, "argv", ["expcalc.py"])

def _feed(monkeypatch, repl, lines):
    it = iter(lines)

    async def fake_ainput(prompt: str) -> str:
        return next(it)
    monkeypatch.setattr(repl, "ainput", fake_ainput)

@pytest.mark.asyncio
async def test_repl_quit_immediately(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl, [":quit"])

    await repl.main()
    out = capsys.readouterr().out
    assert "Expression Calculator v0.1" in out
    assert "Type ':help' for commands, ':quit' or Ctrl+D to quit." in out

@pytest.mark.asyncio
async def test_repl_prints_output_and_values(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl, [":define x = 4\n", "x * 2 + 1\n", ":quit\n"])

    await repl.main()
    out, err = capsys.readouterr()
    assert 'Defined "x" as 4.' in out
    assert "\n9\n" in out
    assert err == ""

@pytest.mark.asyncio
async def test_repl_errors_print_to_stderr(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl, ["1 +\n", "2 + 2\n", ":quit\n"])

    await repl.main()
    out, err = capsys.readouterr()
    assert "SyntaxError: Missing right-hand side of operator." in err
    # the loop keeps going after an error
    assert "\n4\n" in out

@pytest.mark.asyncio
async def test_repl_eof_exits(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl, [""])

    await repl.main()
    assert "Exiting." in capsys.readouterr().out

@pytest.mark.asyncio
async def test_repl_reads_config_file(tmp_path, monkeypatch, capsys):
    (tmp_path / "expcalc.yaml").write_text("format: separated\n", encoding="utf-8")
    repl = _load_repl_module()
    _feed(monkeypatch, repl, ["1000000 + 1\n", ":quit\n"])

    await repl.main()
    assert "1 000 001" in capsys.readouterr().out

@pytest.mark.asyncio
async def test_repl_bad_config_exits(tmp_path, monkeypatch, capsys):
    (tmp_path / "expcalc.yaml").write_text("nonsense: 1\n", encoding="utf-8")
    repl = _load_repl_module()
    _feed(monkeypatch, repl, [":quit\n"])

    with pytest.raises(SystemExit) as exc:
        await repl.main()
    assert exc.value.code == 2
    assert "unknown setting" in capsys.readouterr().err

@pytest.mark.asyncio
async def test_run_script_file(tmp_path, capsys):
    repl = _load_repl_module()
    script = tmp_path / "calc.txt"
    script.write_text("# comment\n:define sq(x) = x * x\nsq(12)\n", encoding="utf-8")

    await repl.run_script_file(str(script))
    out = capsys.readouterr().out
    assert 'Defined "sq(x)" as "x * x".' in out
    assert out.rstrip().endswith("144")

@pytest.mark.asyncio
async def test_run_script_file_stops_on_error(tmp_path, capsys):
    repl = _load_repl_module()
    script = tmp_path / "bad.txt"
    script.write_text("1 + 1\nnope\n3\n", encoding="utf-8")

    with pytest.raises(SystemExit) as exc:
        await repl.run_script_file(str(script))
    assert exc.value.code == 1
    out, err = capsys.readouterr()
    assert 'Undefined variable "nope".' in err
    assert "3" not in out

@pytest.mark.asyncio
async def test_run_script_file_missing(tmp_path, capsys):
    repl = _load_repl_module()
    with pytest.raises(SystemExit):
        await repl.run_script_file(str(tmp_path / "absent.txt"))
    assert "file not found" in capsys.readouterr().err

@pytest.mark.asyncio
async def test_main_runs_script_from_argv(tmp_path, monkeypatch, capsys):
    repl = _load_repl_module()
    script = tmp_path / "s.txt"
    script.write_text("6 * 7\n", encoding="utf-8")
    monkeypatch.setattr(sys, "argv", ["expcalc.py", str(script)])

    await repl.main()
    assert capsys.readouterr().out.strip() == "42"
