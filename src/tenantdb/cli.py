"""
Command-line health check for tenant databases.

Usage:
    tenantdb-health [--config PATH] [--tenant ID ...]

Loads the data-access configuration, checks connectivity and pool
statistics for the selected tenants (default: all), prints the report as
JSON, and exits with status 1 if any tenant is unhealthy or unknown.
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from tenantdb.config import DEFAULT_CONFIG_PATH, DataAccessConfig
from tenantdb.router import ConnectionRouter

EXIT_OK = 0
EXIT_UNHEALTHY = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tenantdb-health",
        description="Check connectivity of tenant databases",
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to the tenants YAML file (default: $TENANTDB_CONFIG_PATH or {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--tenant",
        action="append",
        dest="tenants",
        metavar="ID",
        help="Tenant to check; repeat for several (default: all configured tenants)",
    )
    return parser


def load_config(path: Optional[str]) -> DataAccessConfig:
    if path is None:
        return DataAccessConfig.from_env()
    return DataAccessConfig.from_yaml(path)


async def run_health_check(
    config: DataAccessConfig, tenants: Optional[List[str]] = None
) -> Dict[str, Any]:
    async with ConnectionRouter(config) as router:
        return await router.health_check(tenants)


def is_healthy(report: Dict[str, Any]) -> bool:
    return all(entry["status"] == "healthy" for entry in report.values())


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, yaml.YAMLError, ValidationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    report = asyncio.run(run_health_check(config, args.tenants))
    print(json.dumps(report, indent=2, default=str))

    return EXIT_OK if is_healthy(report) else EXIT_UNHEALTHY


if __name__ == "__main__":
    sys.exit(main())
