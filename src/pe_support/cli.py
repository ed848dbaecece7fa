"""
CLI entry point for pe-support.

Usage:
    pe-support [options]

Collects Puppet Enterprise support diagnostics into an archive. Options are
read, lowest precedence first, from a YAML config file (--config, or the
first of CONFIG_SEARCH_PATHS that exists), PE_SUPPORT_* environment
variables, and the command line.

Examples:
    pe-support --list
    pe-support --ticket 12345 --only system,puppetserver.logs
    pe-support --noop --enable pe.console.classifier-groups
"""

import argparse
import logging
import sys
from typing import Any, Dict, List, Optional

import yaml

from pe_support import __version__
from pe_support.catalog import BaseScope, build_registry
from pe_support.log_manager import LogManager
from pe_support.runner import Runner
from pe_support.settings import DEFAULT_LOG_AGE, Settings, SettingsError, find_config_file

LIST_OPTIONS = ("enable", "disable", "only")


def comma_list(value: str) -> List[str]:
    return [item for item in value.split(",") if item]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pe-support",
        description="Collects Puppet Enterprise Support Diagnostics",
    )
    parser.add_argument("--version", action="version", version=f"pe-support {__version__}")

    parser.add_argument("-d", "--dir", metavar="DIRECTORY", help="Output directory. Defaults to: /var/tmp")
    parser.add_argument("-e", "--encrypt", action="store_true", default=None, help="Encrypt output using GPG")
    parser.add_argument(
        "-l", "--log_age", metavar="DAYS",
        help=f'Log age (in days) to collect, or "all". Defaults to: {DEFAULT_LOG_AGE}',
    )
    parser.add_argument("-n", "--noop", action="store_true", default=None, help="Enable noop mode")
    parser.add_argument(
        "--enable", metavar="LIST", type=comma_list, action="extend",
        help="Comma-delimited list of scopes or checks to enable",
    )
    parser.add_argument(
        "--disable", metavar="LIST", type=comma_list, action="extend",
        help="Comma-delimited list of scopes or checks to disable",
    )
    parser.add_argument(
        "--only", metavar="LIST", type=comma_list, action="extend",
        help="Comma-delimited list of scopes or checks to run, disabling all others",
    )
    parser.add_argument(
        "--list", action="store_true", default=None,
        help="List available scopes and checks that can be passed to --enable, --disable, or --only",
    )
    parser.add_argument("-t", "--ticket", metavar="NUMBER", help="Support ticket number")
    parser.add_argument(
        "-u", "--upload", action="store_true", default=None,
        help="Upload to Puppet Support via SFTP. Requires the --ticket parameter",
    )
    parser.add_argument(
        "--upload_disable_host_key_check", action="store_true", default=None,
        help="Disable SFTP Host Key Check. Requires the --upload parameter",
    )
    parser.add_argument("--upload_key", metavar="FILE", help="Key for SFTP. Requires the --upload parameter")
    parser.add_argument("--upload_user", metavar="USER", help="User for SFTP. Requires the --upload parameter")
    parser.add_argument("--gpg_key", metavar="FILE", help="Public key to encrypt with. Requires --encrypt")
    parser.add_argument("--config", metavar="FILE", help="YAML file of default option values")
    parser.add_argument(
        "-z", dest="z_do_not_delete_drop_directory", action="store_true", default=None,
        help="Do not delete output directory after archiving",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show informational messages")

    return parser


def options_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    """Return only the options given on the command line."""
    skip = {"config", "verbose"}
    return {key: value for key, value in vars(args).items() if key not in skip and value is not None}


def configure_settings(settings: Settings, args: argparse.Namespace) -> None:
    """Apply config file, environment and flags, in that order."""
    config_path = args.config or find_config_file()
    if config_path:
        settings.load_file(config_path)

    settings.apply_env()
    settings.configure(**options_from_args(args))


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    print(f"Puppet Enterprise Support Script v{__version__}")
    print()

    settings = Settings()
    level = logging.INFO if args.verbose else logging.WARNING
    settings.log.add_logger(LogManager.console_logger(level))

    try:
        configure_settings(settings, args)
    except SettingsError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except (OSError, yaml.YAMLError) as e:
        print(f"Error: could not read config file: {e}", file=sys.stderr)
        return 1

    runner = Runner(settings, build_registry())
    runner.add_child(BaseScope, name="")
    return runner.run()


if __name__ == "__main__":
    sys.exit(main())
