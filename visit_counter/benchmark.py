import argparse
import re
import time
from concurrent.futures import ThreadPoolExecutor

import requests
from requests.adapters import HTTPAdapter

_NUMBER = re.compile(r"(\d+)\s*$")


def make_session(clients: int) -> requests.Session:
    s = requests.Session()
    adapter = HTTPAdapter(pool_connections=clients, pool_maxsize=clients, max_retries=0)
    s.mount("http://", adapter)
    s.headers.update({"Connection": "keep-alive"})
    return s


def read_visit(resp: requests.Response) -> int:
    """
    Counter value after the visit that produced resp.

    The text body carries the count before the visit, the JSON body the
    count after it.
    """
    resp.raise_for_status()
    if resp.headers.get("Content-Type", "").startswith("application/json"):
        return int(resp.json()["visits"])
    m = _NUMBER.search(resp.text)
    if m is None:
        raise ValueError(f"unexpected response body: {resp.text!r}")
    return int(m.group(1)) + 1


def worker(url: str, n: int, clients: int):
    s = make_session(clients)
    for _ in range(n):
        r = s.get(url, timeout=10)
        r.raise_for_status()


def bench(url: str, clients: int, iters: int) -> bool:
    # every probe is itself a visit
    before = read_visit(requests.get(url, timeout=10))
    t0 = time.perf_counter()

    with ThreadPoolExecutor(max_workers=clients) as ex:
        futures = [ex.submit(worker, url, iters, clients) for _ in range(clients)]
        for f in futures:
            f.result()

    dt = time.perf_counter() - t0
    after = read_visit(requests.get(url, timeout=10))

    total = clients * iters
    expected = before + total + 1
    rps = total / dt if dt > 0 else float("inf")
    ok = after == expected

    print(f"clients={clients} calls_per_client={iters} total_calls={total}")
    print(f"time_sec={dt:.6f} rps={rps:.2f}")
    print(f"count_before={before} count_after={after} expected={expected} ok={ok}")
    return ok


def main():
    p = argparse.ArgumentParser(description="Hammer GET / and check for lost updates")
    p.add_argument("--url", default="http://127.0.0.1:4001/")
    p.add_argument("--clients", type=int, default=10)
    p.add_argument("--iters", type=int, default=1_000)
    args = p.parse_args()

    ok = bench(args.url, args.clients, args.iters)
    raise SystemExit(0 if ok else 1)


if __name__ == "__main__":
    main()
