"""Recipe Ingest

Simple CLI for running an ingest task in-process, or serving the API.
"""

import argparse
import asyncio
import json
import sys
import uuid

from recipe_ingest.api.deps import build_services
from recipe_ingest.models.task import IngestMode, IngestPayload, Task


async def run_ingest(url: str | None, query: str | None, provider: str | None = None) -> int:
    """Run one ingest task and print its progress."""
    services = build_services(run_pipelines=False)
    mode = IngestMode.URL if url else IngestMode.QUERY
    task = Task(
        task_id=str(uuid.uuid4()),
        thread_id=str(uuid.uuid4()),
        payload=IngestPayload(mode=mode, url=url, query=query, search_provider_id=provider),
    )
    await services.task_store.save(task)
    print(f"Ingest {mode.value}: {url or query}")
    print("-" * 50)

    queue = services.broker.open(task.task_id)
    runner = asyncio.create_task(services.runner.run(task))
    async for event in services.broker.drain(queue):
        event_type = event.event.value
        data = event.data

        if event_type == "ingest.progress":
            print(f"[{data.get('progress', 0):>3}%] {data.get('phase')} {data.get('status')}")

        elif event_type == "ingest.search_fallback":
            print(f"[~] Search fell back from {data.get('fallback_from')} to {data.get('provider')}")

        elif event_type == "ingest.phase_failed":
            print(f"[!] {data.get('phase')} failed: [{data.get('error_code')}] {data.get('message')}")

        elif event_type == "ingest.review_ready":
            print(f"\n[*] Draft ready for review ({data.get('extraction_method')})")
    services.broker.close(task.task_id, queue)

    result = await runner
    if not result.success:
        return 1
    print(f"\n{'=' * 50}")
    print(json.dumps(result.draft.to_dict(), indent=2, ensure_ascii=False))
    return 0


def main():
    parser = argparse.ArgumentParser(description="Recipe Ingest")
    parser.add_argument("--url", "-u", help="Recipe page to ingest")
    parser.add_argument("--query", "-q", help="Search query to discover a recipe page")
    parser.add_argument("--provider", "-p", help="Search provider id for --query")
    parser.add_argument("--serve", action="store_true", help="Run the HTTP API instead")
    parser.add_argument("--port", type=int, default=8000)

    args = parser.parse_args()

    if args.serve:
        import uvicorn

        uvicorn.run("recipe_ingest.main:app", host="0.0.0.0", port=args.port)
        return

    if not args.url and not args.query:
        parser.error("one of --url or --query is required")

    sys.exit(asyncio.run(run_ingest(args.url, args.query, args.provider)))


if __name__ == "__main__":
    main()
