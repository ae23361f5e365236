#!/usr/bin/env python

"""
Enqueue a sample bundle job for a running photo bundle worker.

Examples:
    python test_scripts/send_test_job.py --queue-url $JOB_QUEUE_URL \\
        --email me@example.com --url https://picsum.photos/800 --url https://picsum.photos/801

    python test_scripts/send_test_job.py --queue-url $JOB_QUEUE_URL \\
        --email me@example.com --sample 25 --include-broken
"""

import argparse
import json
import sys
import uuid
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# --- Constants ---
SAMPLE_IMAGE_URL = "https://picsum.photos/seed/{seed}/1600/1200"
BROKEN_IMAGE_URL = "https://httpbin.org/status/404"


def build_job(
    event_id: str,
    email: str,
    urls: List[str],
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    """The job body exactly as the upload API enqueues it."""
    return {
        "eventId": event_id,
        "email": email,
        "requestId": request_id or uuid.uuid4().hex[:8],
        "photos": [
            {"fileName": f"photo_{i:04d}.jpg", "url": url}
            for i, url in enumerate(urls, start=1)
        ],
    }


def collect_urls(args: argparse.Namespace) -> List[str]:
    urls = list(args.url or [])
    urls.extend(SAMPLE_IMAGE_URL.format(seed=f"{args.event_id}-{i}") for i in range(args.sample))
    if args.include_broken:
        urls.append(BROKEN_IMAGE_URL)
    return urls


def print_summary(console: Console, job: Dict[str, Any], message_id: str, queue_url: str) -> None:
    table = Table(title="Enqueued Job")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("Message ID", message_id)
    table.add_row("Queue", queue_url)
    table.add_row("Event ID", job["eventId"])
    table.add_row("Request ID", job["requestId"])
    table.add_row("Recipient", job["email"])
    table.add_row("Photos", str(len(job["photos"])))
    console.print(table)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Send a test job to the photo bundle worker queue.",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("--queue-url", required=True, help="URL of the job queue.")
    parser.add_argument("--email", required=True, help="Recipient of the download link.")
    parser.add_argument("--event-id", default=f"test-{uuid.uuid4().hex[:6]}", help="Event id.")
    parser.add_argument("--url", action="append", help="Media URL (repeatable).")
    parser.add_argument(
        "--sample", type=int, default=0, help="Add N sample images from picsum.photos."
    )
    parser.add_argument(
        "--include-broken",
        action="store_true",
        help="Append a URL that returns 404 to exercise partial success.",
    )
    parser.add_argument("--region", help="AWS region of the queue.")
    parser.add_argument(
        "--dry-run", action="store_true", help="Print the job body instead of sending it."
    )
    args = parser.parse_args()

    console = Console()
    urls = collect_urls(args)
    if not urls:
        console.print("[yellow]No media URLs given; the worker will report an empty job.[/yellow]")

    job = build_job(args.event_id, args.email, urls)
    if args.dry_run:
        console.print(Panel(json.dumps(job, indent=2), title="Job body", border_style="blue"))
        return 0

    sqs = boto3.client("sqs", region_name=args.region)
    try:
        response = sqs.send_message(QueueUrl=args.queue_url, MessageBody=json.dumps(job))
    except ClientError as e:
        console.print(Panel(str(e), title="Failed to enqueue job", border_style="red"))
        return 1

    print_summary(console, job, response["MessageId"], args.queue_url)
    console.print("[bold green]✅ Job enqueued.[/bold green] Watch the worker logs for progress.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
