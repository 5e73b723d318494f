import pytest
import typer
from typer.testing import CliRunner

from fakes import FakeConnections
from job_orchestrator import cli

runner = CliRunner()


@pytest.fixture
def fake_redis(monkeypatch, server):
    monkeypatch.setattr(cli, "RedisConnections", lambda settings: FakeConnections(server))
    return server


def test_parse_fields():
    assert cli.parse_fields(["mediaId=m-1", "status=completed", "note=a=b", "empty="]) == {
        "mediaId": "m-1",
        "status": "completed",
        "note": "a=b",
        "empty": "",
    }


@pytest.mark.parametrize("bad", ["mediaId", "=value"])
def test_parse_fields_rejects_malformed(bad):
    with pytest.raises(typer.BadParameter):
        cli.parse_fields([bad])


def test_append_writes_and_notifies(fake_redis):
    result = runner.invoke(cli.app, ["append", "job:status:stream", "mediaId=m-1", "status=processing"])

    assert result.exit_code == 0, result.output
    assert '"stream": "job:status:stream"' in result.output
    assert fake_redis.entries("job:status:stream") == [{"mediaId": "m-1", "status": "processing"}]
    assert fake_redis.published == [("streams:notify:job:status:stream", "1")]


def test_append_rejects_bad_pair(fake_redis):
    result = runner.invoke(cli.app, ["append", "job:status:stream", "oops"])

    assert result.exit_code != 0
    assert fake_redis.stream_len("job:status:stream") == 0


def test_info_shows_entries(fake_redis):
    runner.invoke(cli.app, ["append", "thumbnail:stream", "mediaId=m-1"])

    info = runner.invoke(cli.app, ["info", "thumbnail:stream"])
    assert info.exit_code == 0, info.output
    assert '"length": 1' in info.output
    assert '"mediaId": "m-1"' in info.output


def test_ping_reports_broker(fake_redis):
    result = runner.invoke(cli.app, ["ping"])

    assert result.exit_code == 0, result.output
    assert '"redis": true' in result.output
