# deptxfer/analysis/performance_eval.py
# Records authentication latency, upload timings and session durations for offline review.

import csv          # CSV export of metrics
import json         # serialize metadata for CSV storage
import threading    # records are added from every connection thread
import time         # high-resolution timing

FIELDNAMES = ["operation", "outcome", "bytes", "seconds", "rate_MBps", "source", "timestamp", "meta"]


#### Simple Timer ####
def timed():
    """
    Return a function that yields elapsed seconds when called.

    Usage:
        timer = timed()
        ... authenticate / receive ...
        elapsed = timer()
    """
    start = time.perf_counter()

    def end():
        return time.perf_counter() - start

    return end


#### Metric Recorder ####
class PerfRecorder:
    """
    Thread-safe, in-memory metric recorder.

    Each record has:
      - operation: 'auth', 'upload', 'session', 'server_uptime', ...
      - outcome:   'ok' or an error class name such as 'NoDepartmentError'
      - bytes:     bytes moved (0 for non-transfer operations)
      - seconds:   duration
      - rate_MBps: megabytes per second for transfers, else None
      - source:    'server' or 'client'
      - timestamp: UNIX time the record was taken
      - meta:      optional dict (username, department, filename, ...)
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records = []

    def _add(self, operation, outcome, bytes_count, seconds, rate, source, meta):
        record = {
            "operation": operation,
            "outcome": outcome,
            "bytes": int(bytes_count),
            "seconds": float(seconds),
            "rate_MBps": rate,
            "source": source,
            "timestamp": time.time(),
        }
        if meta is not None:
            record["meta"] = dict(meta) if isinstance(meta, dict) else meta

        with self._lock:
            self._records.append(record)
        return record

    def record_transfer(self, *, operation, bytes_count, seconds, outcome="ok", source="server", meta=None):
        """
        Record an upload measurement.

        A zero-duration transfer has no rate.
        """
        rate = (bytes_count / (1024 * 1024)) / seconds if seconds > 0 else None
        return self._add(operation, outcome, bytes_count, seconds, rate, source, meta)

    def record_response(self, *, operation, seconds, outcome="ok", source="server", meta=None):
        """Record a non-transfer operation such as 'auth' or 'session'."""
        return self._add(operation, outcome, 0, seconds, None, source, meta)

    def snapshot(self):
        """Return a copy of all stored records."""
        with self._lock:
            return list(self._records)

    def clear(self):
        with self._lock:
            self._records.clear()

    def summary(self):
        """
        Count records per operation and outcome.

        Returns:
            dict: {operation: {outcome: count}}, e.g.
                {"auth": {"ok": 3, "UnknownUserError": 1}, "upload": {"ok": 3}}
        """
        counts = {}
        for rec in self.snapshot():
            per_op = counts.setdefault(rec["operation"], {})
            per_op[rec["outcome"]] = per_op.get(rec["outcome"], 0) + 1
        return counts

    def to_csv(self, filepath):
        """
        Write all records to a CSV file, one row per record.

        Dict metadata is stored as a JSON string in the 'meta' column.
        """
        rows = self.snapshot()
        with open(filepath, "w", encoding="utf-8", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=FIELDNAMES)
            writer.writeheader()
            for rec in rows:
                row = dict(rec)
                if isinstance(row.get("meta"), dict):
                    row["meta"] = json.dumps(row["meta"], sort_keys=True)
                writer.writerow(row)
        return len(rows)
