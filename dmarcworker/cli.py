#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""A CLI for ingesting DMARC aggregate and SMTP TLS reports"""

from argparse import Namespace, ArgumentParser
import os
from configparser import ConfigParser
import logging
import json
import sys

from dmarcworker import (
    InvalidDMARCReport,
    InvalidSMTPTLSReport,
    ParserError,
    __version__,
    parse_report,
)
from dmarcworker.database import DatabaseError, SQLiteReportStore
from dmarcworker.ingest import ingest_email
from dmarcworker.log import logger
from dmarcworker.queue import QueueRunner, ReplyQueue
from dmarcworker.reply import SMTPReplySender
from dmarcworker.report_store import ReportStore
from dmarcworker.storage import SQLiteQueueStorage, StorageError
from dmarcworker.utils import EmailParserError
from dmarcworker.webhook import WebhookClient

formatter = logging.Formatter(
    fmt="%(levelname)8s:%(filename)s:%(lineno)d:%(message)s",
    datefmt="%Y-%m-%d:%H:%M:%S",
)
handler = logging.StreamHandler()
handler.setFormatter(formatter)
logger.addHandler(handler)


def _str_to_list(s):
    """Converts a comma separated string to a list"""
    _list = s.split(",")
    return list(filter(None, map(lambda i: i.strip(), _list)))


def _build_arg_parser():
    arg_parser = ArgumentParser(description="Ingests DMARC and SMTP TLS reports")
    arg_parser.add_argument(
        "-c",
        "--config-file",
        help="a path to a configuration file (--silent implied)",
    )
    arg_parser.add_argument(
        "file_path",
        nargs="*",
        help="one or more paths to aggregate or SMTP TLS report files or emails",
    )
    arg_parser.add_argument("-o", "--output", help="write JSON output to the given file")
    arg_parser.add_argument(
        "--store",
        help="save reports to the given SQLite database",
    )
    arg_parser.add_argument(
        "--send-replies",
        action="store_true",
        help="queue acknowledgment replies for aggregate report emails",
    )
    arg_parser.add_argument(
        "--watch-queue",
        action="store_true",
        help="send queued replies as they become due until interrupted",
    )
    arg_parser.add_argument(
        "-s", "--silent", action="store_true", help="only print errors"
    )
    arg_parser.add_argument(
        "-w",
        "--warnings",
        action="store_true",
        help="print warnings in addition to errors",
    )
    arg_parser.add_argument(
        "--verbose", action="store_true", help="more verbose output"
    )
    arg_parser.add_argument(
        "--debug", action="store_true", help="print debugging information"
    )
    arg_parser.add_argument("--log-file", default=None, help="output logging to a file")
    arg_parser.add_argument("-v", "--version", action="version", version=__version__)
    return arg_parser


def _load_config(opts, config_file):
    """Overrides options with the settings of an INI configuration file"""
    abs_path = os.path.abspath(config_file)
    if not os.path.exists(abs_path):
        logger.error("A file does not exist at {0}".format(abs_path))
        exit(-1)
    opts.silent = True
    config = ConfigParser()
    config.read(config_file)
    if "general" in config.sections():
        general_config = config["general"]
        if "debug" in general_config:
            opts.debug = general_config.getboolean("debug")
        if "verbose" in general_config:
            opts.verbose = general_config.getboolean("verbose")
        if "silent" in general_config:
            opts.silent = general_config.getboolean("silent")
        if "warnings" in general_config:
            opts.warnings = general_config.getboolean("warnings")
        if "log_file" in general_config:
            opts.log_file = general_config["log_file"]
        if "output" in general_config:
            opts.output = general_config["output"]
    if "ingest" in config.sections():
        ingest_config = config["ingest"]
        if "trusted_reporters" in ingest_config:
            opts.trusted_reporters = _str_to_list(ingest_config["trusted_reporters"])
        if "reply_delay" in ingest_config:
            opts.reply_delay = ingest_config.getfloat("reply_delay")
        if "send_replies" in ingest_config:
            opts.send_replies = ingest_config.getboolean("send_replies")
    if "smtp" in config.sections():
        smtp_config = config["smtp"]
        if "host" in smtp_config:
            opts.smtp_host = smtp_config["host"]
        else:
            logger.critical("host setting missing from the smtp config section")
            exit(-1)
        if "port" in smtp_config:
            opts.smtp_port = smtp_config.getint("port")
        if "ssl" in smtp_config:
            opts.smtp_ssl = smtp_config.getboolean("ssl")
        if "starttls" in smtp_config:
            opts.smtp_starttls = smtp_config.getboolean("starttls")
        if "user" in smtp_config:
            opts.smtp_user = smtp_config["user"]
        if "password" in smtp_config:
            opts.smtp_password = smtp_config["password"]
        if "from" in smtp_config:
            opts.smtp_from = smtp_config["from"]
        else:
            logger.critical("from setting missing from the smtp config section")
            exit(-1)
        if "domain" in smtp_config:
            opts.smtp_domain = smtp_config["domain"]
        else:
            opts.smtp_domain = opts.smtp_from.split("@")[-1]
        if "timeout" in smtp_config:
            opts.smtp_timeout = smtp_config.getfloat("timeout")
    if "queue" in config.sections():
        queue_config = config["queue"]
        if "path" in queue_config:
            opts.queue_path = queue_config["path"]
        if "max_attempts" in queue_config:
            opts.queue_max_attempts = queue_config.getint("max_attempts")
        if "send_timeout" in queue_config:
            opts.queue_send_timeout = queue_config.getfloat("send_timeout")
        if "check_timeout" in queue_config:
            opts.queue_check_timeout = queue_config.getfloat("check_timeout")
    if "sqlite" in config.sections():
        sqlite_config = config["sqlite"]
        if "path" in sqlite_config:
            opts.sqlite_path = sqlite_config["path"]
    if "webhook" in config.sections():
        webhook_config = config["webhook"]
        if "aggregate_url" in webhook_config:
            opts.webhook_aggregate_url = webhook_config["aggregate_url"]
        if "smtp_tls_url" in webhook_config:
            opts.webhook_smtp_tls_url = webhook_config["smtp_tls_url"]
        if "timeout" in webhook_config:
            opts.webhook_timeout = webhook_config.getfloat("timeout")
    return opts


def _parse_options(argv=None):
    args = _build_arg_parser().parse_args(argv)
    opts = Namespace(
        file_path=args.file_path,
        config_file=args.config_file,
        output=args.output,
        silent=args.silent,
        warnings=args.warnings,
        debug=args.debug,
        verbose=args.verbose,
        log_file=args.log_file,
        send_replies=args.send_replies,
        watch_queue=args.watch_queue,
        trusted_reporters=[],
        reply_delay=3600.0,
        smtp_host=None,
        smtp_port=0,
        smtp_ssl=False,
        smtp_starttls=True,
        smtp_user=None,
        smtp_password=None,
        smtp_from=None,
        smtp_domain=None,
        smtp_timeout=30.0,
        queue_path="reply_queue.sqlite",
        queue_max_attempts=5,
        queue_send_timeout=30.0,
        queue_check_timeout=60.0,
        sqlite_path=args.store,
        webhook_aggregate_url=None,
        webhook_smtp_tls_url=None,
        webhook_timeout=60.0,
    )
    if args.config_file:
        _load_config(opts, args.config_file)
        if args.store:
            opts.sqlite_path = args.store
    return opts


def _configure_logging(opts):
    logger.setLevel(logging.ERROR)

    if opts.warnings:
        logger.setLevel(logging.WARNING)
    if opts.verbose:
        logger.setLevel(logging.INFO)
    if opts.debug:
        logger.setLevel(logging.DEBUG)
    if opts.log_file:
        try:
            fh = logging.FileHandler(opts.log_file, "a")
            file_formatter = logging.Formatter(
                "%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )
            fh.setFormatter(file_formatter)
            logger.addHandler(fh)
        except Exception as error:
            logger.warning("Unable to write to log file: {}".format(error))


def _build_report_store(opts):
    database = None
    webhook = None
    if opts.sqlite_path:
        database = SQLiteReportStore(opts.sqlite_path)
    if opts.webhook_aggregate_url or opts.webhook_smtp_tls_url:
        webhook = WebhookClient(
            aggregate_url=opts.webhook_aggregate_url,
            smtp_tls_url=opts.webhook_smtp_tls_url,
            timeout=opts.webhook_timeout,
        )
    if database is None and webhook is None:
        return None
    return ReportStore(database=database, webhook=webhook)


def _build_queue_runner(opts):
    if opts.smtp_host is None or opts.smtp_from is None:
        logger.critical("Sending replies requires an smtp config section")
        exit(1)
    sender = SMTPReplySender(
        opts.smtp_host,
        opts.smtp_from,
        opts.smtp_domain,
        port=opts.smtp_port,
        starttls=opts.smtp_starttls,
        use_ssl=opts.smtp_ssl,
        user=opts.smtp_user,
        password=opts.smtp_password,
        timeout=opts.smtp_timeout,
    )
    queue = ReplyQueue(
        SQLiteQueueStorage(opts.queue_path),
        sender,
        max_attempts=opts.queue_max_attempts,
        send_timeout=opts.queue_send_timeout,
    )
    return QueueRunner(queue, check_timeout=opts.queue_check_timeout)


def _process_file(file_path, opts, store, runner, results):
    with open(file_path, "rb") as input_file:
        content = input_file.read()
    try:
        parsed_report = parse_report(content)
    except (InvalidDMARCReport, InvalidSMTPTLSReport):
        raise
    except ParserError:
        # Not a bare report, so treat the file as a report email
        email_results = ingest_email(
            content,
            store,
            runner,
            trusted_reporters=opts.trusted_reporters,
            reply_delay=opts.reply_delay,
        )
        results["aggregate_reports"] += email_results["aggregate_reports"]
        results["smtp_tls_reports"] += email_results["smtp_tls_reports"]
        return

    if parsed_report["report_type"] == "aggregate":
        results["aggregate_reports"].append(parsed_report["report"])
        if store is not None:
            store.save_aggregate_report(parsed_report["report"])
    else:
        results["smtp_tls_reports"].append(parsed_report["report"])
        if store is not None:
            store.save_smtp_tls_report(parsed_report["report"])


def _main():
    """Called when the module is executed"""
    opts = _parse_options()
    _configure_logging(opts)

    if len(opts.file_path) == 0 and not opts.watch_queue:
        logger.error("You must supply input files or --watch-queue")
        exit(1)

    logger.info("Starting dmarcworker")

    try:
        store = _build_report_store(opts)
    except DatabaseError as error_:
        logger.critical("Database Error: {0}".format(error_.__str__()))
        exit(1)

    runner = None
    if opts.send_replies or opts.watch_queue:
        try:
            runner = _build_queue_runner(opts)
        except StorageError as error_:
            logger.critical("Queue Error: {0}".format(error_.__str__()))
            exit(1)

    results = {"aggregate_reports": [], "smtp_tls_reports": []}
    for file_path in opts.file_path:
        try:
            _process_file(
                file_path,
                opts,
                store,
                runner if opts.send_replies else None,
                results,
            )
        except (OSError, ParserError, EmailParserError) as error:
            logger.error("Failed to parse {0} - {1}".format(file_path, error))

    output_str = "{0}\n".format(json.dumps(results, ensure_ascii=False, indent=2))
    if not opts.silent:
        print(output_str)
    if opts.output:
        with open(opts.output, "w", encoding="utf-8", newline="\n") as output_file:
            output_file.write(output_str)

    if opts.watch_queue:
        try:
            runner.watch()
        except KeyboardInterrupt:
            runner.stop()

    if runner is not None:
        runner.queue.storage.close()
    if store is not None:
        store.close()


if __name__ == "__main__":
    _main()
    sys.exit(0)
