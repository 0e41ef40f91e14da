import json
import os

import httpx
import pytest

import actions_usage as mod

J1 = mod.JobID("org/repo", 5, 11)
J2 = mod.JobID("org/repo", 5, 12)


def test_write_regions_json_shape(tmp_path):
    t = mod.RegionTracker()
    t.insert(mod.Interval(1000, 5000, J1))
    t.insert(mod.Interval(2000, 3000, J2))

    out = tmp_path / "regions.json"
    written = mod.write_regions(t.regions(), out)
    assert str(written) == str(out)

    data = json.loads(out.read_text())
    assert data == [
        {"start": 1000, "end": 2000, "count": [
            {"repo": "org/repo", "workflow_run_id": 5, "job_id": 11},
        ]},
        {"start": 2000, "end": 3000, "count": [
            {"repo": "org/repo", "workflow_run_id": 5, "job_id": 12},
            {"repo": "org/repo", "workflow_run_id": 5, "job_id": 11},
        ]},
    ]
    # two-space indented
    assert '\n  {\n    "start": 1000' in out.read_text()


def test_write_regions_defaults_to_temp_file():
    path = mod.write_regions([])
    try:
        assert os.path.basename(path).startswith("regionoutput")
        assert path.endswith(".json")
        with open(path) as fh:
            assert json.load(fh) == []
    finally:
        os.remove(path)


def test_region_range():
    assert mod.region_range([]) == ""
    regions = [mod.Region(0, 1000, (J1,)), mod.Region(60_000, 120_000, (J2,))]
    assert mod.region_range(regions) == (
        " range_start: 1970-01-01T00:00:00Z range_end: 1970-01-01T00:02:00Z"
    )


def test_main_requires_token(monkeypatch):
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    with pytest.raises(SystemExit) as exc:
        mod.main(["--repos", "org/repo"])
    assert exc.value.code == 2


def test_main_rejects_bad_repos(monkeypatch):
    monkeypatch.setenv("GITHUB_TOKEN", "t")
    with pytest.raises(SystemExit) as exc:
        mod.main(["--repos", "not-a-repo"])
    assert exc.value.code == 2


def test_main_writes_region_file(monkeypatch, tmp_path):
    monkeypatch.setenv("GITHUB_TOKEN", "t")

    def handler(request):
        path = request.url.path
        page = request.url.params["page"]
        if path == "/repos/org/repo/actions/runs":
            runs = [] if page != "1" else [{
                "id": 9,
                "created_at": "2024-01-01T00:00:00Z",
                "repository": {"name": "repo", "owner": {"login": "org"}},
            }]
            return httpx.Response(200, json={"workflow_runs": runs})
        if path == "/repos/org/repo/actions/runs/9/jobs":
            return httpx.Response(200, json={"total_count": 1, "jobs": [{
                "id": 1,
                "started_at": "2024-01-01T00:00:00Z",
                "completed_at": "2024-01-01T00:00:30Z",
            }]})
        return httpx.Response(404)

    real_client = httpx.Client

    def fake_client(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr("actions_usage.httpx.Client", fake_client)

    out = tmp_path / "out.json"
    mod.main(["--repos", "org/repo", "--out", str(out), "--api-url", "https://api.example.test"])

    data = json.loads(out.read_text())
    assert data == [{"start": 1704067200000, "end": 1704067230000, "count": [
        {"repo": "org/repo", "workflow_run_id": 9, "job_id": 1},
    ]}]


def test_main_exits_on_api_error(monkeypatch):
    monkeypatch.setenv("GITHUB_TOKEN", "t")

    real_client = httpx.Client

    def fake_client(**kwargs):
        handler = lambda request: httpx.Response(500)
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr("actions_usage.httpx.Client", fake_client)

    with pytest.raises(SystemExit) as exc:
        mod.main(["--repos", "org/repo"])
    assert exc.value.code == 1


def test_main_exits_on_malformed_job(monkeypatch, tmp_path):
    monkeypatch.setenv("GITHUB_TOKEN", "t")

    def handler(request):
        if request.url.path == "/repos/org/repo/actions/runs":
            runs = [] if request.url.params["page"] != "1" else [{
                "id": 9,
                "repository": {"name": "repo", "owner": {"login": "org"}},
            }]
            return httpx.Response(200, json={"workflow_runs": runs})
        return httpx.Response(200, json={"total_count": 1, "jobs": [{
            "id": 1,
            "started_at": "garbage",
            "completed_at": "2024-01-01T00:00:30Z",
        }]})

    real_client = httpx.Client

    def fake_client(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr("actions_usage.httpx.Client", fake_client)

    with pytest.raises(SystemExit) as exc:
        mod.main(["--repos", "org/repo", "--out", str(tmp_path / "out.json")])
    assert exc.value.code == 1
    assert not (tmp_path / "out.json").exists()
