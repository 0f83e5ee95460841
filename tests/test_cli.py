import json
import sqlite3
import sys
from datetime import timedelta
from types import SimpleNamespace

import pytest

from video_recs import cli
from video_recs.utils import utcnow


def _run_cli(monkeypatch, argv, name):
    captured = []
    monkeypatch.setattr(cli, name, lambda args: captured.append(args))
    monkeypatch.setattr(sys, "argv", argv)
    cli.main()
    return captured[0]


def test_main_dispatches_to_subcommand(monkeypatch):
    args = _run_cli(monkeypatch, ["prog", "stats"], "cmd_stats")
    assert args.command == "stats"


def test_cli_parses_recommend_args(monkeypatch):
    args = _run_cli(
        monkeypatch,
        ["prog", "recommend", "--user", "u1", "--page", "2", "--languages", "ru,en", "--size", "5",
         "--format", "json"],
        "cmd_recommend",
    )

    assert args.user == "u1"
    assert args.page == 2
    assert args.languages == "ru,en"
    assert args.size == 5
    assert args.format == "json"


def test_cli_recommend_defaults(monkeypatch):
    args = _run_cli(monkeypatch, ["prog", "recommend", "--languages", "en", "--size", "3"], "cmd_recommend")

    assert args.user is None
    assert args.page == 0
    assert args.format == "text"


def test_cli_recommend_requires_languages(monkeypatch):
    monkeypatch.setattr(sys, "argv", ["prog", "recommend", "--size", "3"])
    with pytest.raises(SystemExit):
        cli.main()


def test_cli_serve_args(monkeypatch):
    args = _run_cli(monkeypatch, ["prog", "serve", "--port", "9001"], "cmd_serve")

    assert args.port == 9001
    assert args.host == cli.SERVER_HOST


@pytest.fixture
def dataset(tmp_path):
    recent = (utcnow() - timedelta(hours=1)).isoformat()
    payload = {
        "users": ["u1", {"id": "u2"}],
        "videos": [
            {"id": 1, "language": "en", "category": "music", "title": "One"},
            {"id": 2, "language": "en", "category": "news"},
            {"id": 3, "language": "ru", "category": "music"},
        ],
        "likes": [
            {"user_id": "u1", "video_id": 1, "timestamp": recent},
            {"user_id": "u2", "video_id": 1, "timestamp": recent},
            {"user_id": "u2", "video_id": 3},
            {"user_id": "u2", "video_id": 3},
        ],
    }
    path = tmp_path / "dataset.json"
    path.write_text(json.dumps(payload))
    return path


def test_import_then_export(fresh_db, dataset, tmp_path):
    cli.cmd_import(SimpleNamespace(file=str(dataset)))

    stats = fresh_db.get_stats()
    assert stats["users"] == 2
    assert stats["videos"] == 3
    assert stats["video_likes"] == 3  # duplicate like skipped

    out = tmp_path / "export.json"
    cli.cmd_export(SimpleNamespace(file=str(out)))
    exported = json.loads(out.read_text())

    assert [u["id"] for u in exported["users"]] == ["u1", "u2"]
    assert exported["videos"][0] == {"id": 1, "title": "One", "language": "en", "category": "music"}
    assert len(exported["likes"]) == 3
    assert "exported_at" in exported


def test_exported_file_can_be_reimported(fresh_db, dataset, tmp_path):
    cli.cmd_import(SimpleNamespace(file=str(dataset)))
    out = tmp_path / "export.json"
    cli.cmd_export(SimpleNamespace(file=str(out)))

    cli.cmd_import(SimpleNamespace(file=str(out)))

    assert fresh_db.get_stats()["video_likes"] == 3


def test_recommend_json_output(fresh_db, dataset, capsys):
    cli.cmd_import(SimpleNamespace(file=str(dataset)))
    capsys.readouterr()

    cli.cmd_recommend(SimpleNamespace(user="u1", page=0, languages="en", size=10, format="json"))

    ids = json.loads(capsys.readouterr().out)
    assert sorted(ids) == [1, 2, 3]


def test_main_exits_on_unknown_user(fresh_db, monkeypatch):
    fresh_db.init_db()
    monkeypatch.setattr(
        sys, "argv", ["prog", "recommend", "--user", "ghost", "--languages", "en", "--size", "3"]
    )

    with pytest.raises(SystemExit) as exc_info:
        cli.main()

    assert exc_info.value.code == 1


def test_stats_logs_counts(fresh_db, dataset, caplog):
    cli.cmd_import(SimpleNamespace(file=str(dataset)))

    with caplog.at_level("INFO", logger="video_recs.cli"):
        cli.cmd_stats(SimpleNamespace())

    assert "Videos: 3" in caplog.text
    assert "en: 2 likes" in caplog.text


def test_import_skips_likes_for_unknown_users_and_videos(fresh_db, tmp_path, caplog):
    path = tmp_path / "partial.json"
    path.write_text(json.dumps({
        "users": ["u1"],
        "videos": [{"id": 1, "language": "en", "category": "music"}],
        "likes": [
            {"user_id": "nobody", "video_id": 1},
            {"user_id": "u1", "video_id": 99},
            {"user_id": "u1", "video_id": 1},
        ],
    }))

    with caplog.at_level("INFO", logger="video_recs.cli"):
        cli.cmd_import(SimpleNamespace(file=str(path)))

    assert fresh_db.get_stats()["video_likes"] == 1
    assert "2 invalid skipped" in caplog.text
    with fresh_db.get_db(read_only=True) as conn:
        assert conn.execute("SELECT COUNT(*) FROM user_languages").fetchone()[0] == 1


def test_main_exits_on_database_error(fresh_db, monkeypatch):
    fresh_db.init_db()
    monkeypatch.setattr(sys, "argv", ["prog", "stats"])

    def _broken(_args):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(cli, "cmd_stats", _broken)

    with pytest.raises(SystemExit) as exc_info:
        cli.main()

    assert exc_info.value.code == 1
