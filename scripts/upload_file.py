import argparse
import hashlib
import json
import os
import random
import statistics
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

import httpx


def _read_chunks(path: str, chunk_size: int) -> list[bytes]:
    with open(path, "rb") as fh:
        data = fh.read()
    if not data:
        raise SystemExit(f"{path} is empty")
    return [data[i : i + chunk_size] for i in range(0, len(data), chunk_size)]


def _upload_chunk(client: httpx.Client, upload_id: str, index: int, chunk: bytes, retries: int) -> float:
    headers = {"X-Chunk-SHA256": hashlib.sha256(chunk).hexdigest()}
    for attempt in range(retries + 1):
        t0 = time.perf_counter()
        resp = client.put(f"/v1/uploads/{upload_id}/chunks/{index}", content=chunk, headers=headers, timeout=60.0)
        if resp.status_code == 200:
            return (time.perf_counter() - t0) * 1000
        retry = resp.json().get("retry") if resp.headers.get("content-type", "").startswith("application/json") else None
        if retry != "now" or attempt == retries:
            resp.raise_for_status()
        time.sleep(float(resp.headers.get("Retry-After", "1")))
    raise RuntimeError("unreachable")


def main() -> int:
    parser = argparse.ArgumentParser(description="Upload a file in shuffled parallel chunks and verify a range read.")
    parser.add_argument("path", help="File to upload")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000", help="API base URL")
    parser.add_argument("--chunk-size-bytes", type=int, default=1024 * 1024, help="Chunk size in bytes")
    parser.add_argument("--workers", type=int, default=4, help="Parallel chunk uploads")
    parser.add_argument("--retries", type=int, default=3, help="Retries per chunk for retryable errors")
    parser.add_argument("--mime-type", default=None, help="Content type recorded for the blob")
    parser.add_argument("--output", default="", help="Optional path to write JSON summary")
    args = parser.parse_args()

    chunks = _read_chunks(args.path, args.chunk_size_bytes)
    total_bytes = sum(len(chunk) for chunk in chunks)
    order = list(range(len(chunks)))
    random.shuffle(order)

    started = time.perf_counter()
    with httpx.Client(base_url=args.base_url.rstrip("/")) as client:
        init = client.post(
            "/v1/uploads/init",
            json={
                "file_name": os.path.basename(args.path),
                "total_chunks": len(chunks),
                "file_size": total_bytes,
                "mime_type": args.mime_type,
            },
            timeout=30.0,
        )
        init.raise_for_status()
        upload_id = init.json()["upload_id"]
        print(f"upload_id={upload_id} chunks={len(chunks)}")

        latencies_ms: list[float] = []
        with ThreadPoolExecutor(max_workers=args.workers) as pool:
            futures = [pool.submit(_upload_chunk, client, upload_id, idx, chunks[idx], args.retries) for idx in order]
            for fut in as_completed(futures):
                latencies_ms.append(fut.result())

        missing = client.get(f"/v1/uploads/{upload_id}/missing-chunks").json()["missing_chunk_indexes"]
        if missing:
            print(f"[FAIL] server still reports missing chunks: {missing}")
            return 1

        complete = client.post(f"/v1/uploads/{upload_id}/complete", timeout=300.0)
        complete.raise_for_status()
        blob_handle = complete.json()["blob_handle"]

        start = total_bytes // 3
        end = min(total_bytes - 1, start + 1023)
        expected = b"".join(chunks)[start : end + 1]
        ranged = client.get(f"/v1/blobs/{blob_handle}", headers={"Range": f"bytes={start}-{end}"})
        if ranged.status_code != 206 or ranged.content != expected:
            print(f"[FAIL] range read mismatch: status={ranged.status_code}")
            return 2

    elapsed = time.perf_counter() - started
    p95 = statistics.quantiles(latencies_ms, n=20)[-1] if len(latencies_ms) >= 20 else max(latencies_ms, default=0.0)
    summary = {
        "upload_id": upload_id,
        "blob_handle": blob_handle,
        "total_bytes": total_bytes,
        "total_chunks": len(chunks),
        "elapsed_seconds": round(elapsed, 3),
        "throughput_mb_per_s": round((total_bytes / (1024 * 1024)) / elapsed, 3) if elapsed > 0 else 0.0,
        "chunk_latency_ms_avg": round(statistics.mean(latencies_ms), 3),
        "chunk_latency_ms_p95": round(p95, 3),
        "range_verified": f"{start}-{end}",
    }

    print("Upload summary:")
    for key, value in summary.items():
        print(f"- {key}: {value}")

    if args.output:
        os.makedirs(os.path.dirname(args.output) or ".", exist_ok=True)
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2)
        print(f"\nWrote summary to {args.output}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
