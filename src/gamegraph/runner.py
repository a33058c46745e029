import logging
import sys
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed

from tqdm import tqdm

from .errors import GamegraphError
from .utils import utc_now_iso

logger = logging.getLogger(__name__)

SUMMARY_KEYS = ("scanned", "fetched", "cache_hit", "written", "failed")


class StageSummary:
    """Start/end counters every stage reports so a run can be audited from its log."""

    def __init__(self, stage, stats=None):
        self.stage = stage
        self.stats = stats
        self.counts = Counter({key: 0 for key in SUMMARY_KEYS})
        self.extra = {}
        self.failed_batches = []
        self.started_at = utc_now_iso()
        self._t0 = time.monotonic()

    def add(self, key, amount=1):
        self.counts[key] += amount

    def start(self, **details):
        detail = " ".join(f"{key}={value}" for key, value in details.items())
        logger.info("[*] %s: starting %s", self.stage, detail)

    def batch_failed(self, cursor, error):
        self.counts["failed"] += 1
        self.failed_batches.append({"cursor": cursor, "error": str(error)})
        logger.error("[!] %s: batch at cursor %s failed: %s", self.stage, cursor, error)

    def as_dict(self):
        data = {
            "stage": self.stage,
            "started_at": self.started_at,
            "finished_at": utc_now_iso(),
            "elapsed_seconds": round(time.monotonic() - self._t0, 2),
            "counts": dict(self.counts),
        }
        if self.extra:
            data["extra"] = dict(self.extra)
        if self.failed_batches:
            data["failed_batches"] = list(self.failed_batches)
        if self.stats is not None:
            data["fetch_stats"] = self.stats.snapshot()
        return data

    def finish(self):
        counts = " ".join(f"{key}={self.counts[key]}" for key in SUMMARY_KEYS)
        extras = " ".join(f"{key}={value}" for key, value in sorted(self.counts.items()) if key not in SUMMARY_KEYS)
        logger.info("[+] %s: done %s %s", self.stage, counts, extras)
        if self.stats is not None:
            snapshot = self.stats.snapshot()
            logger.info(
                "[+] %s: network_calls=%s retries=%s cache_hits=%s cache_misses=%s statuses=%s",
                self.stage,
                snapshot["network_calls"],
                snapshot["retries"],
                snapshot["cache_hits"],
                snapshot["cache_misses"],
                snapshot["http_status_counts"],
            )
        return self.as_dict()


def progress(iterable=None, **kwargs):
    kwargs.setdefault("disable", not sys.stderr.isatty())
    return tqdm(iterable, **kwargs)


def run_batches(batches, worker, *, workers=1, desc=None, unit="batch"):
    """Run worker(batch) on a bounded pool, yielding (batch, result, error) as batches finish.

    Pipeline errors are returned per batch so one failed batch never stops the others;
    anything else propagates.
    """
    batches = list(batches)
    if not batches:
        return
    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        futures = {executor.submit(worker, batch): batch for batch in batches}
        with progress(total=len(batches), desc=desc, unit=unit) as bar:
            for future in as_completed(futures):
                batch = futures[future]
                bar.update(1)
                try:
                    result = future.result()
                except GamegraphError as exc:
                    yield batch, None, exc
                    continue
                yield batch, result, None
