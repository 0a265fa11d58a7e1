import argparse
import asyncio
import sys

import yaml

from dropbin.dropbin import Dropbin
from dropbin.exceptions import DropbinError
from dropbin.log_config import configure_logging
from dropbin.models.config import DropbinConfig
from dropbin.models.record import Visibility


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dropbin",
        description="Store, fetch and expire short-lived blobs",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML config file (defaults apply when omitted)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Log JSON lines instead of the console renderer",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    put = subparsers.add_parser("put", help="Upload a file and print its id")
    put.add_argument("file")
    put.add_argument("--token", required=True)
    put.add_argument("--title", default=None, help="Defaults to the file name")
    put.add_argument("--ttl", type=float, default=None, help="Seconds until expiry")
    put.add_argument("--unlisted", action="store_true")

    get = subparsers.add_parser("get", help="Download a blob by id")
    get.add_argument("id")
    get.add_argument("-o", "--output", default=None, help="Defaults to stdout")

    list_ = subparsers.add_parser("list", help="List live public blobs")
    list_.add_argument("--token", required=True)

    subparsers.add_parser("sweep", help="Purge expired blobs and orphaned content")
    subparsers.add_parser("serve", help="Run the sweeper until interrupted")

    return parser


def load_dropbin(config_path: str | None) -> Dropbin:
    if config_path is None:
        return Dropbin(DropbinConfig())
    return Dropbin.from_file(config_path)


async def run_command(dropbin: Dropbin, args: argparse.Namespace):
    if args.command == "serve":
        await dropbin.start(sweep=True)
        try:
            await asyncio.Event().wait()
        finally:
            await dropbin.close()
        return

    await dropbin.start(sweep=False)
    try:
        if args.command == "put":
            with open(args.file, "rb") as f:
                data = f.read()
            blob_id = await dropbin.ingest(
                data,
                token=args.token,
                title=args.title or args.file,
                ttl=args.ttl,
                visibility=Visibility.UNLISTED if args.unlisted else Visibility.PUBLIC,
            )
            print(blob_id)
        elif args.command == "get":
            download = await dropbin.retrieve(args.id)
            if args.output is None:
                sys.stdout.buffer.write(download.data)
                sys.stdout.buffer.flush()
            else:
                with open(args.output, "wb") as f:
                    f.write(download.data)
        elif args.command == "list":
            for summary in await dropbin.list_public(args.token):
                print(summary.model_dump_json())
        elif args.command == "sweep":
            result = await dropbin.sweep()
            print(result.model_dump_json())
    finally:
        await dropbin.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(pretty=not args.json_logs)

    try:
        dropbin = load_dropbin(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        # missing or invalid config, or a backend that cannot be set up from it
        print(f"error: {e}", file=sys.stderr)
        return 1

    try:
        asyncio.run(run_command(dropbin, args))
    except (DropbinError, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
