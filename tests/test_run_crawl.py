from __future__ import annotations

import json

import run_crawl


def _sink_ops(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def test_requires_seeds(capsys):
    assert run_crawl.main([]) == run_crawl.EXIT_USAGE
    assert "seed" in capsys.readouterr().out


def test_file_system_crawl_twice(tmp_path, capsys):
    site = tmp_path / "site"
    site.mkdir()
    (site / "index.html").write_text("<title>Home</title><p>home</p>", encoding="utf-8")
    (site / "notes.txt").write_text("notes", encoding="utf-8")
    work = tmp_path / "work"
    sink = tmp_path / "sink.jsonl"
    argv = [str(site), "--work-dir", str(work), "--crawler-id", "fs", "--committer-file", str(sink), "--summary"]

    assert run_crawl.main(argv) == run_crawl.EXIT_FINISHED
    summary = json.loads(capsys.readouterr().out)
    assert summary["state"] == "FINISHED"
    assert summary["counts_by_status"] == {"NEW": 3}
    added = {op["reference"] for op in _sink_ops(sink) if op["op"] == "add"}
    assert added == {str(site), str(site / "index.html"), str(site / "notes.txt")}

    (site / "notes.txt").unlink()
    assert run_crawl.main(argv) == run_crawl.EXIT_FINISHED
    summary = json.loads(capsys.readouterr().out)
    assert summary["session_id"] == 2
    removed = [op["reference"] for op in _sink_ops(sink) if op["op"] == "remove"]
    assert removed == [str(site / "notes.txt")]

    assert (work / "fs" / "checkpoints" / "progress.json").exists()
    assert (work / "fs" / "logs" / "fs.log").exists()


def test_exclude_and_max_documents(tmp_path, capsys):
    site = tmp_path / "site"
    site.mkdir()
    for name in ("a.txt", "b.txt", "c.pdf"):
        (site / name).write_text(name, encoding="utf-8")
    work = tmp_path / "work"
    argv = [
        str(site), "--work-dir", str(work), "--crawler-id", "x",
        "--exclude-ext", "pdf", "--num-threads", "1", "--max-documents", "2", "--summary",
    ]

    assert run_crawl.main(argv) == run_crawl.EXIT_STOPPED
    summary = json.loads(capsys.readouterr().out)
    assert summary["state"] == "STOPPED"
    assert summary["processed"] == 2

    resumed = [a for a in argv if a not in ("--max-documents", "2")]
    assert run_crawl.main(resumed) == run_crawl.EXIT_FINISHED
    summary = json.loads(capsys.readouterr().out)
    assert summary["resumed"] is True
    assert summary["counts_by_status"] == {"NEW": 1, "REJECTED": 1}


def test_single_log_file(tmp_path, capsys):
    site = tmp_path / "site"
    site.mkdir()
    (site / "a.txt").write_text("a", encoding="utf-8")
    work = tmp_path / "work"
    log_file = tmp_path / "logs" / "crawl.log"
    argv = [str(site), "--work-dir", str(work), "--crawler-id", "solo", "--log-file", str(log_file), "--summary"]

    assert run_crawl.main(argv) == run_crawl.EXIT_FINISHED
    summary = json.loads(capsys.readouterr().out)
    assert summary["counts_by_status"] == {"NEW": 2}

    text = log_file.read_text(encoding="utf-8")
    assert "Crawler=solo" in text
    assert not (work / "solo" / "logs" / "solo.log").exists()
