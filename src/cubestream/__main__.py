import argparse
import asyncio
import functools
import json
import signal
import sys

from cubestream.config import Config
from cubestream.db import run_migrations
from cubestream.errors import IngestError
from cubestream.input import STEP_NAMES, FreshBuild, MergeBuild, StreamingInput
from cubestream.jobs import JobContext
from cubestream.jobs.constants import ARG_CUBE_NAME, ARG_JOB_ID, ARG_OUTPUT, ARG_SEGMENT_ID
from cubestream.logger import configure_logging, log
from cubestream.metadata import SegmentMetadataStore
from cubestream.offsets.types import SegmentOffsets
from cubestream.parsers.base import ColumnRef
from cubestream.source import SourceConfig
from cubestream.source.kafka import kafka_source_client_factory

EXIT_FAILED = 1
# sysexits EX_TEMPFAIL, schedulers retry on it
EXIT_RETRYABLE = 75


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cubestream")
    parser.add_argument("--log-level", default=None)
    sub = parser.add_subparsers(dest="command", required=True)

    src = sub.add_parser("register-source", help="register or update a streaming source")
    src.add_argument("identity")
    src.add_argument("--topic", required=True)
    src.add_argument("--bootstrap-servers", required=True)
    src.add_argument("--parser", default="json")
    src.add_argument("--property", action="append", default=[], metavar="KEY=VALUE")
    src.add_argument("--column", action="append", default=[], metavar="NAME[:TYPE]")
    src.add_argument("--timeout-ms", type=int, default=None)

    seg = sub.add_parser("create-segment", help="create a segment to be built from a source")
    seg.add_argument("cube")
    seg.add_argument("source")
    seg.add_argument("--name")
    seg.add_argument("--offsets", help='explicit ranges, e.g. [[0,0,100],[1,0,80]]')

    mseg = sub.add_parser("create-merge", help="create a segment replacing READY segments")
    mseg.add_argument("cube")
    mseg.add_argument("segments", nargs="+")
    mseg.add_argument("--name")

    build = sub.add_parser("build", help="run every step of a fresh build")
    build.add_argument("segment_id")
    build.add_argument("--job-id")

    merge = sub.add_parser("merge", help="run the merge of a merged segment")
    merge.add_argument("segment_id")
    merge.add_argument("--job-id")

    step = sub.add_parser("step", help="run a single step, as a scheduler would")
    step.add_argument("name", choices=STEP_NAMES)
    step.add_argument("segment_id")
    step.add_argument("--job-id", required=True)
    step.add_argument("--output")

    return parser


def parse_properties(items: list[str]) -> dict[str, str]:
    props = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep:
            raise SystemExit(f"property must be KEY=VALUE: {item}")
        props[key] = value
    return props


def parse_columns(items: list[str]) -> tuple[ColumnRef, ...]:
    columns = []
    for item in items:
        name, _, datatype = item.partition(":")
        columns.append(ColumnRef(name=name, datatype=datatype or "varchar"))
    return tuple(columns)


async def dispatch(args: argparse.Namespace, config: Config) -> None:
    metadata = SegmentMetadataStore(config)
    streaming = StreamingInput(config, metadata, kafka_source_client_factory(config))

    match args.command:
        case "register-source":
            await metadata.register_source(
                SourceConfig(
                    identity=args.identity,
                    topic=args.topic,
                    bootstrap_servers=args.bootstrap_servers,
                    parser_name=args.parser,
                    parser_properties=parse_properties(args.property),
                    columns=parse_columns(args.column),
                    timeout_ms=args.timeout_ms,
                )
            )
            print(args.identity)
        case "create-segment":
            requested = SegmentOffsets.from_json(args.offsets) if args.offsets else None
            await metadata.get_source(args.source)
            segment_id = await metadata.create_segment(
                args.cube, args.source, name=args.name, requested=requested
            )
            print(segment_id)
        case "create-merge":
            print(await metadata.create_merged_segment(args.cube, args.segments, name=args.name))
        case "build" | "merge":
            trigger = FreshBuild(args.segment_id) if args.command == "build" else MergeBuild(args.segment_id)
            job = await streaming.create_job(trigger, job_id=args.job_id)
            results = await job.run()
            print(json.dumps([{"state": r.state.value, **r.stats} for r in results]))
        case "step":
            segment = await metadata.get_segment(args.segment_id)
            params = {
                ARG_CUBE_NAME: segment.cube_name,
                ARG_SEGMENT_ID: segment.id,
                ARG_JOB_ID: args.job_id,
            }
            if args.output:
                params[ARG_OUTPUT] = args.output
            result = await streaming.step(args.name).execute(JobContext(job_id=args.job_id, params=params))
            print(json.dumps({"state": result.state.value, "output": result.output, **result.stats}))


async def run(args: argparse.Namespace) -> int:
    loop = asyncio.get_running_loop()
    config = Config()
    task: asyncio.Task | None = None

    def _signal_handler(*_):
        log.warning("shutdown signal received, cancelling")
        if task is not None:
            task.cancel()

    # satisfy the pycharm type checker
    functools.partial(loop.add_signal_handler, signal.SIGINT, _signal_handler)()
    functools.partial(loop.add_signal_handler, signal.SIGTERM, _signal_handler)()

    try:
        await run_migrations(config)
        task = asyncio.create_task(dispatch(args, config))
        await task
        return 0
    except asyncio.CancelledError:
        log.info("cancelled, nothing further committed")
        return EXIT_RETRYABLE
    except IngestError as e:
        log.error("command failed", command=args.command, error=str(e), retryable=e.retryable)
        return EXIT_RETRYABLE if e.retryable else EXIT_FAILED
    finally:
        await config.engine.dispose()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        log.info("keyboard interrupt caught, exiting")
        return EXIT_RETRYABLE


if __name__ == "__main__":
    sys.exit(main())
