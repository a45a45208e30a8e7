import asyncio
import argparse
import json
import logging
import sys
from pathlib import Path

from uploadcore.client import ChunkedUploader
from uploadcore.config import load_config
from uploadcore.exceptions import UploadError
from uploadcore.upload import UploadEngine

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)


def build_config(args):
    """Config file + environment, then command-line overrides"""
    config = load_config(Path(args.config) if args.config else None)

    if args.upload_dir:
        config.upload_dir = Path(args.upload_dir)
    if args.redis_url:
        config.redis_url = args.redis_url
    if args.chunk_size:
        config.chunk_size = args.chunk_size
    config.validate()
    return config


async def run_upload(engine, args):
    """Upload a local file through the engine"""
    if not args.owner:
        raise UploadError("--owner is required for upload")

    def report(progress):
        logger.info(f"{progress.session_id}: {progress.completed_count}/"
                    f"{progress.total_chunks} chunks ({progress.percent:.1f}%)")

    uploader = ChunkedUploader(
        engine,
        concurrency=args.concurrency,
        retries=args.retries,
        on_progress=report
    )
    assembled = await uploader.upload(
        Path(args.target), args.owner, mime_type=args.mime_type, file_name=args.name
    )
    print(json.dumps(assembled.to_dict(), indent=2))


async def run_status(engine, args):
    """Show progress of an in-flight session"""
    progress = await engine.status(args.target)
    result = progress.to_dict()
    result['missingChunks'] = await engine.missing_chunks(args.target)
    print(json.dumps(result, indent=2))


async def run_cancel(engine, args):
    """Cancel a session and drop its staged chunks"""
    existed = await engine.cancel(args.target)
    print(json.dumps({'fileId': args.target, 'cancelled': existed}))


async def run_list(engine, args):
    """List assembled files stored for an owner"""
    files = await engine.list_files(args.target)
    print(json.dumps([f.to_dict() for f in files], indent=2))


async def run_delete(engine, args):
    """Delete an assembled file"""
    if not args.owner:
        raise UploadError("--owner is required for delete")
    await engine.delete_file(args.owner, args.target)
    print(json.dumps({'fileId': args.target, 'deleted': True}))


def create_parser():
    """Create argument parser"""
    parser = argparse.ArgumentParser(
        description='uploadcore - chunked upload session engine',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Upload a file in 1MB chunks
  python main.py upload ./photo.png --owner device-1

  # Inspect or cancel a session (needs a shared Redis registry)
  python main.py status <session-id> --redis-url redis://localhost:6379
  python main.py cancel <session-id> --redis-url redis://localhost:6379

  # List or delete stored files
  python main.py list device-1
  python main.py delete <file-id> --owner device-1
        """
    )

    # Mode selection
    parser.add_argument(
        'mode',
        choices=['upload', 'status', 'cancel', 'list', 'delete'],
        help='Operation'
    )
    parser.add_argument(
        'target',
        help='File to upload, session id for status/cancel, owner id for list, file id for delete'
    )

    # Configuration
    parser.add_argument(
        '--config',
        help='YAML configuration file'
    )
    parser.add_argument(
        '--upload-dir',
        help='Storage root (default: ./uploads)'
    )
    parser.add_argument(
        '--redis-url',
        help='Redis URL for the session registry (default: in-memory)'
    )
    parser.add_argument(
        '--chunk-size',
        type=int,
        help='Chunk size in bytes (default: 1048576)'
    )

    # Upload-specific arguments
    parser.add_argument(
        '--owner',
        help='Owner/device id the file is stored under (upload, delete)'
    )
    parser.add_argument(
        '--name',
        help='Final file name (default: the local file name)'
    )
    parser.add_argument(
        '--mime-type',
        help='Declared MIME type (default: guessed from the name)'
    )
    parser.add_argument(
        '--concurrency',
        type=int,
        default=4,
        help='Chunks sent in parallel (default: 4)'
    )
    parser.add_argument(
        '--retries',
        type=int,
        default=2,
        help='Retries per chunk on I/O errors (default: 2)'
    )

    # Logging
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    parser.add_argument(
        '--quiet',
        action='store_true',
        help='Minimal output'
    )

    return parser


async def main(argv=None):
    """Main entry point"""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Adjust logging level
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    elif args.quiet:
        logging.getLogger().setLevel(logging.WARNING)

    try:
        config = build_config(args)
    except (OSError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    engine = UploadEngine(config)
    try:
        if args.mode == 'upload':
            await run_upload(engine, args)
        elif args.mode == 'status':
            await run_status(engine, args)
        elif args.mode == 'cancel':
            await run_cancel(engine, args)
        elif args.mode == 'list':
            await run_list(engine, args)
        elif args.mode == 'delete':
            await run_delete(engine, args)
    except UploadError as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        await engine.close()
    return 0


def cli():
    """Console script entry point"""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)


if __name__ == '__main__':
    cli()
