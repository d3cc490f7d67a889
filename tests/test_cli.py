import os

from cpu_pipeline_sim import PREDICTOR_KEYS, main, read_timeline


def write_trace(tmp_path, text, name="prog.trace"):
    path = tmp_path / name
    path.write_text(text)
    return str(path)


def test_run_writes_timeline(tmp_path, capsys):
    trace = write_trace(tmp_path, "LOAD r1 [r0+0]\nADD r2 r1 r0\nHALT\n")
    out = str(tmp_path / "data" / "timeline.csv")
    assert main(["--trace", trace, "--out", out, "--predictor", "2BIT"]) == 0

    header, rows = read_timeline(out)
    assert header == ["cycle", "IF", "ID", "EX", "MEM", "WB"]
    assert len(rows) == 8
    stdout = capsys.readouterr().out
    assert "Loaded 3 instructions" in stdout
    assert "Cycles=8 Retired=2" in stdout
    assert "StallsRAW=1" in stdout
    assert "Predictor=TwoBit" in stdout


def test_no_forwarding_and_unknown_predictor(tmp_path, capsys):
    trace = write_trace(tmp_path, "LOAD r1 [r0+0]\nADD r2 r1 r0\nHALT\n")
    out = str(tmp_path / "t.csv")
    assert main(["-t", trace, "-o", out, "--no-forwarding", "-p", "perceptron"]) == 0
    stdout = capsys.readouterr().out
    assert "Forwarding=OFF" in stdout
    assert "StallsRAW=3" in stdout
    assert "Predictor=Static-AlwaysNotTaken" in stdout


def test_cycle_cap(tmp_path, capsys):
    trace = write_trace(tmp_path, "BNE r1 r2 -1\n")
    out = str(tmp_path / "t.csv")
    assert main(["-t", trace, "-o", out, "-n", "25"]) == 0
    _, rows = read_timeline(out)
    assert len(rows) == 25


def test_verbose_prints_rows_and_stats(tmp_path, capsys):
    trace = write_trace(tmp_path, "HALT\n")
    assert main(["-t", trace, "-o", str(tmp_path / "t.csv"), "-v"]) == 0
    stdout = capsys.readouterr().out
    assert "  5,-,-,-,-,HALT#0" in stdout
    assert "Simulation Statistics" in stdout


def test_bad_trace_exits_one(tmp_path, capsys):
    trace = write_trace(tmp_path, "ADD r1 r2 r3\nADD r1 r99 r3\n")
    out = tmp_path / "t.csv"
    assert main(["-t", trace, "-o", str(out)]) == 1
    assert "line 2" in capsys.readouterr().err
    assert not out.exists()


def test_missing_trace_exits_one(tmp_path, capsys):
    assert main(["-t", str(tmp_path / "nope.trace")]) == 1
    assert "could not open trace" in capsys.readouterr().err


def test_undecodable_trace_exits_one(tmp_path, capsys):
    trace = tmp_path / "latin1.trace"
    trace.write_bytes(b"NOP # caf\xe9\nHALT\n")
    assert main(["-t", str(trace), "-o", str(tmp_path / "t.csv")]) == 1
    assert "could not decode trace" in capsys.readouterr().err


def test_list(capsys):
    assert main(["--list"]) == 0
    assert capsys.readouterr().out.split() == list(PREDICTOR_KEYS)


def test_all_sweeps_predictors(tmp_path, capsys):
    trace = write_trace(tmp_path, "ADD r1 r0 r0\nBNE r1 r0 -1\nHALT\n", name="loop.trace")
    out_dir = tmp_path / "data"
    assert main(["-t", trace, "-o", str(out_dir / "timeline.csv"), "--all", "-n", "40"]) == 0
    files = sorted(os.listdir(out_dir))
    assert len(files) == 10
    assert "loop__operand_fw_on__predictor_one_bit.csv" in files
    assert "loop__operand_fw_off__predictor_tournament.csv" in files
    assert capsys.readouterr().out.count("Done.") == 10


def test_verbose_applies_to_every_sweep_run(tmp_path, capsys):
    trace = write_trace(tmp_path, "HALT\n", name="halt.trace")
    out = str(tmp_path / "data" / "timeline.csv")
    assert main(["-t", trace, "-o", out, "--all", "-v"]) == 0
    stdout = capsys.readouterr().out
    assert stdout.count("Simulation Statistics") == 10
    assert stdout.count("  5,-,-,-,-,HALT#0") == 10


def test_unknown_predictor_named_once_in_verbose_stats(tmp_path, capsys):
    trace = write_trace(tmp_path, "HALT\n")
    assert main(["-t", trace, "-o", str(tmp_path / "t.csv"), "-p", "gshare", "-v"]) == 0
    stdout = capsys.readouterr().out
    assert "Predictor=Static-AlwaysNotTaken" in stdout
    assert "Predictor:            Static-AlwaysNotTaken" in stdout
