from __future__ import annotations

import argparse

import uvicorn


def main() -> None:
    # Serve the API app; the worker runs separately via `arq finledger.workers.sync_worker.WorkerSettings`.
    parser = argparse.ArgumentParser(description="Run the finledger API server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    uvicorn.run("finledger.apps.api.main:app", host=args.host, port=args.port)


if __name__ == "__main__":
    main()
