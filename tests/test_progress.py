import json
import pathlib
import sys

from redis.exceptions import ConnectionError as RedisConnectionError

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from cardpipeline.workflow.utils import progress


class _FakeRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.hashes = {}
        self.published = []

    def hset(self, key, mapping):
        if self.fail:
            raise RedisConnectionError("connection refused")
        self.hashes.setdefault(key, {}).update(mapping)

    def publish(self, channel, message):
        self.published.append((channel, message))


def _patch(monkeypatch, client):
    urls = []

    def from_url(url, decode_responses=False):
        urls.append(url)
        return client

    monkeypatch.setattr(progress.Redis, "from_url", staticmethod(from_url))
    return urls


def test_progress_written_to_hash_and_channel(monkeypatch):
    client = _FakeRedis()
    urls = _patch(monkeypatch, client)

    progress.emit_progress("job-7", "book-1", "RUNNING", "synthesis", 40, {"cards": 12}, redis_url="redis://progress/2")

    assert urls == ["redis://progress/2"]
    assert client.hashes["job:job-7"] == {"content_id": "book-1", "progress": "40", "status": "RUNNING", "current_step": "synthesis", "cards": "12"}
    channel, message = client.published[0]
    assert channel == "progress:job-7"
    assert json.loads(message)["current_step"] == "synthesis"


def test_no_job_id_is_a_no_op(monkeypatch):
    urls = _patch(monkeypatch, _FakeRedis())
    progress.emit_progress(None, "book-1", "RUNNING", "structure")
    assert urls == []


def test_redis_failure_does_not_raise(monkeypatch):
    client = _FakeRedis(fail=True)
    _patch(monkeypatch, client)

    progress.emit_progress("job-7", "book-1", "FAILED", "error")

    assert client.published == []
