import argparse
import logging
import signal
import sys
import time
from pathlib import Path

from tqdm import tqdm

from .admission import AdmissionError, get_job_status, requeue_stale, submit_job
from .config import ConfigError, load_settings
from .ffmpeg_runner import check_ffmpeg
from .logging_config import configure_logging
from .queue import (
    JobNotFoundError,
    QueueUnavailableError,
    SQLAlchemyJobStore,
    build_worker_pool,
    open_queue,
)

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="render-pipeline", description="Background video render pipeline"
    )
    parser.add_argument("--config", "-c", type=str, help="YAML config file (default: $RENDER_CONFIG)")
    parser.add_argument("--queue-url", type=str, help="Override queue URL")
    parser.add_argument("--database-url", type=str, help="Override job store URL")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Override log level"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run worker loops until interrupted")
    worker_parser.add_argument("--workers", "-w", type=int, help="Number of worker loops")
    worker_parser.add_argument("--max-retries", type=int, help="Override MAX_RETRIES")
    worker_parser.add_argument(
        "--max-jobs", type=int, help="Stop each loop after this many jobs"
    )

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Submit a render job")
    submit_parser.add_argument("--owner", required=True, help="Owner id")
    submit_parser.add_argument("--input", "-i", required=True, help="Input media reference")
    submit_parser.add_argument(
        "--effects", "-e", type=str, default="", help="Comma-separated effects (watermark,blur,speed)"
    )
    submit_parser.add_argument("--format", "-f", default="mp4", help="Output container")

    # STATUS
    status_parser = subparsers.add_parser("status", help="Show a job, or queue/store totals")
    status_parser.add_argument("job_id", nargs="?", help="Job id (omit for totals)")

    # WATCH
    watch_parser = subparsers.add_parser("watch", help="Follow a job's progress until it finishes")
    watch_parser.add_argument("job_id", help="Job id")
    watch_parser.add_argument("--interval", type=float, default=1.0, help="Poll interval (s)")

    # SWEEP
    sweep_parser = subparsers.add_parser(
        "sweep", help="Requeue jobs stuck in processing or left pending without a queue message"
    )
    sweep_parser.add_argument(
        "--older-than", type=float, help="Seconds since last update (default: worker.stale_after_s)"
    )

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)

    # CHECK FFMPEG
    subparsers.add_parser("check", help="Verify configuration and dependencies")

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    overrides = {
        "queue.url": args.queue_url,
        "store.database_url": args.database_url,
        "log_level": args.log_level,
        "worker.workers": getattr(args, "workers", None),
        "worker.max_retries": getattr(args, "max_retries", None),
    }
    try:
        settings = load_settings(overrides, config_path=Path(args.config) if args.config else None)
    except ConfigError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1
    configure_logging(settings.log_level)

    try:
        if args.command == "worker":
            return run_worker(settings, max_jobs=args.max_jobs)
        if args.command == "submit":
            return run_submit(settings, args)
        if args.command == "status":
            return run_status(settings, args.job_id)
        if args.command == "watch":
            return run_watch(settings, args.job_id, args.interval)
        if args.command == "sweep":
            older_than = args.older_than or settings.worker.stale_after_s
            return run_sweep(settings, older_than)
        if args.command == "serve":
            return run_serve(settings, args.host, args.port)
        if args.command == "check":
            return run_check(settings)
    except QueueUnavailableError as e:
        print(f"❌ Queue unavailable: {e}", file=sys.stderr)
        return 1

    parser.print_help()
    return 0


def run_worker(settings, max_jobs=None) -> int:
    store = SQLAlchemyJobStore(settings.store.database_url)
    queue = open_queue(settings.queue)
    pool = build_worker_pool(settings, queue, store)

    def handle_signal(signum, frame):
        logger.info("Received %s, stopping after current jobs", signal.Signals(signum).name)
        pool.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    logger.info(
        "Starting %d worker(s) on %s (max_retries=%d)",
        len(pool.workers), settings.queue.url, settings.worker.max_retries,
    )
    try:
        pool.start(max_jobs_per_worker=max_jobs)
        handled = pool.wait()
    finally:
        pool.shutdown(wait=True)
        queue.close()
        store.close()
    print(f"Handled {handled} job(s)")
    return 0


def run_submit(settings, args) -> int:
    effects = [e for e in args.effects.split(",") if e.strip()]
    store = SQLAlchemyJobStore(settings.store.database_url)
    try:
        with open_queue(settings.queue) as queue:
            job = submit_job(store, queue, args.owner, args.input, effects, output_format=args.format)
    except AdmissionError as e:
        print(f"❌ Rejected: {e}", file=sys.stderr)
        return 2
    finally:
        store.close()
    print(f"{job.id} {job.status.value}")
    return 0


def run_status(settings, job_id=None) -> int:
    store = SQLAlchemyJobStore(settings.store.database_url)
    try:
        if job_id:
            try:
                view = get_job_status(store, job_id)
            except JobNotFoundError:
                print(f"❌ Job {job_id} not found", file=sys.stderr)
                return 1
            print(view.model_dump_json(indent=2))
            return 0

        counts = store.count_by_status()
    finally:
        store.close()

    with open_queue(settings.queue) as queue:
        queued = queue.size()
    print("\n" + "=" * 60)
    print("RENDER PIPELINE STATUS")
    print("=" * 60)
    print(f"Pending:              {counts['pending']}")
    print(f"Processing:           {counts['processing']}")
    print(f"Completed:            {counts['completed']}")
    print(f"Failed:               {counts['failed']}")
    print(f"Total:                {sum(counts.values())}")
    print(f"Queued descriptors:   {queued}")
    print("=" * 60)
    return 0


def run_watch(settings, job_id, interval=1.0) -> int:
    store = SQLAlchemyJobStore(settings.store.database_url)
    try:
        with tqdm(total=100, desc=job_id[:8], unit="%") as bar:
            while True:
                try:
                    view = get_job_status(store, job_id)
                except JobNotFoundError:
                    print(f"❌ Job {job_id} not found", file=sys.stderr)
                    return 1
                # Progress resets on retry
                if view.progress < bar.n:
                    bar.reset(total=100)
                bar.update(view.progress - bar.n)
                bar.set_postfix(status=view.status.value, retries=view.retry_count)
                if view.status.is_terminal:
                    break
                time.sleep(interval)
    except KeyboardInterrupt:
        return 130
    finally:
        store.close()

    if view.error_detail:
        print(f"❌ failed: {view.error_detail.splitlines()[0]}")
        return 1
    print(f"✅ {view.output_reference}")
    return 0


def run_sweep(settings, older_than_s) -> int:
    store = SQLAlchemyJobStore(settings.store.database_url)
    try:
        with open_queue(settings.queue) as queue:
            requeued = requeue_stale(store, queue, older_than_s)
    finally:
        store.close()
    print(f"Requeued {len(requeued)} stale job(s)")
    for job_id in requeued:
        print(f"  {job_id}")
    return 0


def run_serve(settings, host, port) -> int:
    import uvicorn

    from .api.main import create_app

    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)
    return 0


def run_check(settings) -> int:
    print("Checking dependencies...")
    ok = True
    if check_ffmpeg(settings.encoder.ffmpeg_path):
        print("✅ ffmpeg found.")
    else:
        print("❌ ffmpeg NOT found.")
        ok = False
    try:
        with open_queue(settings.queue) as queue:
            print(f"✅ queue reachable ({queue.size()} queued).")
    except QueueUnavailableError as e:
        print(f"❌ queue unreachable: {e}")
        ok = False
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
