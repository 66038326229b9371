"""
Command entry point.

Settings come from the environment (see dbbackup.config); the command line
only selects the operation and a few overrides.
"""

import os
import sys
import logging
import argparse
from functools import partial

from dbbackup import configure_logging
from dbbackup.config import (
    ConfigError, get_config, load_dump_options, load_restore_options, load_database_url
)
from dbbackup.backup.compression import get_compressor
from dbbackup.backup.database import Database
from dbbackup.backup.executor import run_backup_cycle
from dbbackup.backup.restore import restore
from dbbackup.scheduler import BackupScheduler


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='dbbackup',
        description='Backup or restore a database to file, SMB or S3 targets.'
    )
    parser.add_argument('--debug', action='store_true', help='enable debug logging')

    subparsers = parser.add_subparsers(dest='command', required=True)

    dump = subparsers.add_parser('dump', aliases=['backup'], help='backup the database')
    dump.add_argument('--once', action='store_true',
                      help='run one backup immediately and exit, ignoring any schedule')

    subparsers.add_parser('restore', help='restore a backup from DB_RESTORE_TARGET')

    return parser


def run_dump(args, environ, base) -> int:
    options = load_dump_options(environ, base)
    if args.once:
        options.schedule.once = True
    options.debug = options.debug or args.debug

    compressor = get_compressor(options.compression)
    database = Database(load_database_url(environ))

    cycle = partial(run_backup_cycle, options, database, compressor)
    scheduler = BackupScheduler(cycle, options.schedule)

    try:
        scheduler.run()
    except KeyboardInterrupt:
        scheduler.shutdown(wait=False)
    finally:
        database.dispose()

    logger.info("Backup complete")
    return 0


def run_restore(args, environ, base) -> int:
    options = load_restore_options(environ, base)
    compressor = get_compressor(options.compression)
    database = Database(load_database_url(environ))

    try:
        restore(options, database, compressor)
    finally:
        database.dispose()

    logger.info("Restore complete")
    return 0


def main(argv=None, environ=None) -> int:
    environ = os.environ if environ is None else environ
    args = build_parser().parse_args(argv)

    try:
        base = get_config(environ=environ)
    except ConfigError as e:
        configure_logging(debug=args.debug)
        logger.error("Configuration error: %s", e)
        return 2

    configure_logging(debug=args.debug or base.DEBUG, log_dir=base.LOG_DIR)

    try:
        if args.command == 'restore':
            return run_restore(args, environ, base)
        return run_dump(args, environ, base)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return 2
    except Exception as e:
        logger.error("%s failed: %s", args.command, e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
