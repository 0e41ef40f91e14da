#!/usr/bin/env python3

import argparse
import json
import logging
import math
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx

log = logging.getLogger(__name__)

# -------------------------
# Constants
# -------------------------

GITHUB_API_URL = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"
MAX_PER_PAGE = 100

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ONE_MS = timedelta(milliseconds=1)
MINUTE_MS = 60 * 1000


class InvalidIntervalError(ValueError):
    pass


class GitHubError(RuntimeError):
    pass


# -------------------------
# Data model
# -------------------------

@dataclass(frozen=True, order=True)
class JobID:
    repo: str
    workflow_run_id: int
    job_id: int


@dataclass(frozen=True)
class Interval:
    start: int  # unix ms
    end: int  # unix ms
    job: JobID


@dataclass(frozen=True)
class Region:
    start: int  # unix ms
    end: int  # unix ms
    jobs: tuple


# -------------------------
# Concurrency regions
# -------------------------

class RegionTracker:
    """
    Keeps a start-ordered list of regions, each tagged with the jobs seen
    active during it, and the largest membership produced so far.

    Only the first region that ends after the new interval starts is
    examined. An interval starting before that region is placed in front of
    it unmerged; one starting inside it splits it in two, and whatever part
    of the interval runs past the region's end is not reconciled with later
    regions.
    """

    def __init__(self):
        self._regions = []
        self._max_concurrency = 0

    @property
    def max_concurrency(self):
        return self._max_concurrency

    def current_max_concurrency(self):
        return self._max_concurrency

    def regions(self):
        return list(self._regions)

    def __len__(self):
        return len(self._regions)

    def insert(self, interval):
        if interval.start >= interval.end:
            raise InvalidIntervalError(
                f"interval for {interval.job} has start {interval.start} >= end {interval.end}"
            )

        for k, reg in enumerate(self._regions):
            if interval.start >= reg.end:
                continue

            if interval.start < reg.start:
                self._regions.insert(k, Region(interval.start, interval.end, (interval.job,)))
                self._observe(1)
            else:
                merged = (interval.job,) + reg.jobs
                self._regions[k:k + 1] = [
                    Region(reg.start, interval.start, reg.jobs),
                    Region(interval.start, interval.end, merged),
                ]
                self._observe(len(merged))
            return

        self._regions.append(Region(interval.start, interval.end, (interval.job,)))
        self._observe(1)

    def _observe(self, count):
        if count > self._max_concurrency:
            self._max_concurrency = count


# -------------------------
# Usage
# -------------------------

def job_minutes(started_ms, completed_ms):
    # inverted intervals count as zero
    return max(0, math.ceil((completed_ms - started_ms) / MINUTE_MS))


class UsageCounter:
    def __init__(self):
        self.total_minutes = 0
        self.jobs = 0

    def add(self, interval):
        self.total_minutes += job_minutes(interval.start, interval.end)
        self.jobs += 1


# -------------------------
# GitHub Actions source
# -------------------------

@dataclass(frozen=True)
class RateLimit:
    remaining: int | None
    limit: int | None

    def __str__(self):
        return f"{self.remaining}/{self.limit}"


def _header_int(headers, name):
    value = headers.get(name)
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_timestamp(value):
    """ISO-8601 timestamp (as returned by the GitHub API) to unix milliseconds."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - EPOCH) // ONE_MS


def format_ms(ms):
    return (EPOCH + ms * ONE_MS).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_repos(value):
    repos = []
    for name in value.split(","):
        parts = [part.strip() for part in name.split("/")]
        if len(parts) != 2 or not all(parts) or any(c.isspace() for c in "".join(parts)):
            raise ValueError(f"bad repository format: {name!r}")
        repos.append((parts[0], parts[1]))
    return repos


class GitHubClient:
    def __init__(self, *, token, base_url=GITHUB_API_URL, timeout=30.0, client=None):
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout, connect=10.0),
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
                "User-Agent": "actions-usage",
            },
        )

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _get(self, url, params):
        try:
            response = self._client.get(url, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise GitHubError(f"GET {url} failed: {exc}") from exc
        except ValueError as exc:
            raise GitHubError(f"GET {url} returned invalid JSON: {exc}") from exc

        if not isinstance(payload, dict):
            raise GitHubError(f"GET {url} returned unexpected payload")

        rate = RateLimit(
            remaining=_header_int(response.headers, "X-RateLimit-Remaining"),
            limit=_header_int(response.headers, "X-RateLimit-Limit"),
        )
        return payload, rate

    def list_workflow_runs(self, owner, repo, *, page, per_page=MAX_PER_PAGE):
        url = f"/repos/{owner}/{repo}/actions/runs"
        payload, rate = self._get(url, {"page": page, "per_page": per_page})
        runs = payload.get("workflow_runs")
        if not isinstance(runs, list):
            raise GitHubError(f"GET {url}: missing workflow_runs")
        return runs, rate

    def list_workflow_jobs(self, owner, repo, run_id, *, page, per_page=MAX_PER_PAGE):
        url = f"/repos/{owner}/{repo}/actions/runs/{run_id}/jobs"
        payload, rate = self._get(url, {"page": page, "per_page": per_page})
        jobs = payload.get("jobs")
        if not isinstance(jobs, list):
            raise GitHubError(f"GET {url}: missing jobs")
        return jobs, payload.get("total_count"), rate


def run_repository(run):
    try:
        repo = run["repository"]
        return repo["owner"]["login"], repo["name"]
    except (KeyError, TypeError) as exc:
        raise GitHubError(f"workflow run {run.get('id')!r}: malformed repository: {exc!r}") from exc


def job_interval(repo, run_id, job):
    try:
        return Interval(
            start=parse_timestamp(job["started_at"]),
            end=parse_timestamp(job["completed_at"]),
            job=JobID(repo=repo, workflow_run_id=run_id, job_id=job["id"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise GitHubError(f"{repo}: run {run_id}: malformed job {job.get('id')!r}: {exc!r}") from exc


def collect_runs(client, repos, run_count):
    runs = []
    for owner, name in repos:
        repo_runs = []
        page = 1
        while len(repo_runs) < run_count:
            page_runs, rate = client.list_workflow_runs(
                owner, name, page=page, per_page=min(MAX_PER_PAGE, run_count)
            )
            if not page_runs:
                break

            repo_runs.extend(page_runs[: run_count - len(repo_runs)])
            log.info(
                "%s/%s: got %d runs (total: %d rate_limit: %s from: %s to %s)",
                owner, name, len(page_runs), len(repo_runs), rate,
                repo_runs[0].get("created_at"), repo_runs[-1].get("created_at"),
            )
            page += 1
        runs.extend(repo_runs)
    return runs


def iter_job_intervals(client, run, max_jobs, on_page=None):
    """
    Yield an Interval for every completed job of a workflow run, in the
    order the API lists them. ``on_page(run_id, jobs, rate)`` is called after
    each page has been fully yielded.
    """
    owner, name = run_repository(run)
    repo = f"{owner}/{name}"
    run_id = run.get("id")
    if run_id is None:
        raise GitHubError(f"{repo}: workflow run without id")

    seen = 0
    page = 1
    while seen < max_jobs:
        jobs, total_count, rate = client.list_workflow_jobs(
            owner, name, run_id, page=page, per_page=MAX_PER_PAGE
        )
        if not jobs:
            break

        for job in jobs:
            started, completed = job.get("started_at"), job.get("completed_at")
            if not started or not completed:
                log.info(
                    "%s: skipped job %s: started_at=%s completed_at=%s",
                    run_id, job.get("id"), started, completed,
                )
                continue
            yield job_interval(repo, run_id, job)

        if on_page:
            on_page(run_id, jobs, rate)

        seen += len(jobs)
        if total_count is not None and seen >= total_count:
            break
        page += 1


# -------------------------
# Core analysis
# -------------------------

def analyze_usage(client, runs, max_jobs):
    tracker = RegionTracker()
    usage = UsageCounter()

    def progress(run_id, jobs, rate):
        regions = tracker.regions()
        log.info(
            "%s: got %d jobs (total_minutes: %d max_concurrency: %d%s region_count: %d rate_limit: %s)",
            run_id, len(jobs), usage.total_minutes, tracker.max_concurrency,
            region_range(regions), len(regions), rate,
        )

    for run in runs:
        for interval in iter_job_intervals(client, run, max_jobs, on_page=progress):
            usage.add(interval)

            previous = tracker.max_concurrency
            try:
                tracker.insert(interval)
            except InvalidIntervalError as exc:
                log.warning("skipped region for job: %s", exc)
                continue

            if tracker.max_concurrency > previous:
                log.info("new max concurrency: %d", tracker.max_concurrency)

    return tracker, usage


# -------------------------
# Report writer
# -------------------------

def job_to_dict(job):
    return {"repo": job.repo, "workflow_run_id": job.workflow_run_id, "job_id": job.job_id}


def region_to_dict(region):
    # "count" holds the job list; the key name is what existing region files use
    return {
        "start": region.start,
        "end": region.end,
        "count": [job_to_dict(job) for job in region.jobs],
    }


def region_range(regions):
    if not regions:
        return ""
    return f" range_start: {format_ms(regions[0].start)} range_end: {format_ms(regions[-1].end)}"


def write_regions(regions, out_path=None):
    """Write regions as a JSON array and return the path written."""
    if out_path is None:
        fh = tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", prefix="regionoutput", suffix=".json", delete=False
        )
    else:
        fh = open(out_path, "w", encoding="utf-8")

    with fh:
        json.dump([region_to_dict(r) for r in regions], fh, indent=2)
        fh.write("\n")
    return fh.name


# -------------------------
# Main
# -------------------------

def main(argv=None):
    ap = argparse.ArgumentParser(
        description="GitHub Actions job concurrency and worker-minute analyzer"
    )
    ap.add_argument("--repos", required=True, help="Comma separated list of repositories, e.g. octo-org/octo-repo")
    ap.add_argument("--run-count", type=int, default=1000, help="Maximum number of runs to consider per repository")
    ap.add_argument("--max-jobs", type=int, default=1000, help="Maximum number of jobs per run")
    ap.add_argument("--out", default=None, help="Path of the region JSON output (default: a temp file)")
    ap.add_argument("--api-url", default=GITHUB_API_URL, help="GitHub REST API base URL")
    ap.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(message)s",
    )

    token = os.getenv("GITHUB_TOKEN")
    if not token:
        ap.error("GITHUB_TOKEN is required")

    try:
        repos = parse_repos(args.repos)
    except ValueError as exc:
        ap.error(str(exc))

    try:
        with GitHubClient(token=token, base_url=args.api_url) as client:
            runs = collect_runs(client, repos, args.run_count)
            tracker, usage = analyze_usage(client, runs, args.max_jobs)
        out = write_regions(tracker.regions(), args.out)
    except (GitHubError, OSError) as exc:
        log.error("%s", exc)
        sys.exit(1)

    log.info(
        "Computed region data: %s (jobs: %d total_minutes: %d max_concurrency: %d region_count: %d)",
        out, usage.jobs, usage.total_minutes, tracker.max_concurrency, len(tracker),
    )


if __name__ == "__main__":
    main()
