import argparse
import json
import sys
from dataclasses import replace
from typing import Any, Dict, List, Optional

import numpy as np
import structlog

from .config import (
    configure_logging,
    get_config_summary,
    load_core_config,
)
from .context import CoreContext
from .core import IdentityCore
from .entropy import assess_randomness
from .exceptions import FreeghostError
from .statements import KnowledgeOfTemplate
from .verifier import Verifier

# Initialize structured logger
logger = structlog.get_logger(__name__)

SELFTEST_SALTS = (b"bank-42", b"clinic-7")


def run_selftest(context: CoreContext, seed: int = 7, salt_samples: int = 64) -> Dict[str, Any]:
    """
    Run the end-to-end scenario on synthetic feature vectors.

    Enrolls one identity, derives identifiers for two services, verifies a
    knowledge proof and checks that a resubmission is rejected. A batch of
    identifiers over many salts is screened for uniformity.
    """
    rng = np.random.default_rng(seed)
    config = context.config
    core = IdentityCore(context)
    verifier = Verifier(context)

    handle = core.enroll(rng.random(config.biometric_dim), rng.random(config.behavioral_dim))
    id_bank = core.get_service_identifier(handle, SELFTEST_SALTS[0])
    id_clinic = core.get_service_identifier(handle, SELFTEST_SALTS[1])

    challenge = verifier.issue_challenge(SELFTEST_SALTS[0])
    statement = KnowledgeOfTemplate()
    response = core.build_response(handle, statement, challenge)
    public_context = verifier.public_context(SELFTEST_SALTS[0])

    first = verifier.verify_response(response, statement, challenge, public_context)
    second = verifier.verify_response(response, statement, challenge, public_context)

    identifiers = [
        core.get_service_identifier(handle, f"service-{i}".encode()).value
        for i in range(salt_samples)
    ]
    randomness = assess_randomness(identifiers)

    checks = {
        "identifiers_differ": id_bank != id_clinic,
        "first_submission_accepted": first.accepted,
        "resubmission_rejected": not second.accepted,
        "identifiers_look_uniform": randomness.passes(),
    }
    return {
        "security_level": context.level.bits,
        "id_bank": id_bank.preview(),
        "id_clinic": id_clinic.preview(),
        "first_outcome": str(first),
        "second_outcome": str(second),
        "randomness": randomness.to_dict(),
        "checks": checks,
        "passed": all(checks.values()),
    }


class FreeghostCLI:
    """Command-line interface of the FREEGHOST identity core."""

    def __init__(self) -> None:
        self.parser = self._create_argument_parser()

    def _create_argument_parser(self) -> argparse.ArgumentParser:
        """Creates the argument parser for the CLI."""
        parser = argparse.ArgumentParser(
            prog="freeghost-core",
            description="FREEGHOST identity core - templates, identifiers and ZK verification",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )

        subparsers = parser.add_subparsers(dest="command", required=True)
        self._add_selftest_command(subparsers)
        subparsers.add_parser("config", help="Print the effective configuration.")

        return parser

    def _add_selftest_command(self, subparsers) -> None:
        """Add the 'selftest' command and its arguments."""
        selftest_parser = subparsers.add_parser(
            "selftest",
            help="Run the enrollment, proof and replay scenario on synthetic data.",
        )
        selftest_parser.add_argument(
            "--level",
            type=int,
            choices=[128, 192, 256],
            default=None,
            help="Security level. Default: from configuration.",
        )
        selftest_parser.add_argument(
            "--fast",
            action="store_true",
            help="Use minimal Argon2 costs (for smoke tests only).",
        )
        selftest_parser.add_argument(
            "--json",
            action="store_true",
            help="Print the report as JSON.",
        )

    def _execute_selftest_command(self, args: argparse.Namespace) -> int:
        try:
            config = load_core_config()
            if args.level is not None:
                config = replace(config, security_level=args.level)
            if args.fast:
                config = replace(config, argon2_time_cost=1, argon2_memory_cost=1024)

            report = run_selftest(CoreContext.from_config(config))
        except FreeghostError as e:
            logger.error("Self-test failed with an application error", **e.to_dict())
            print(f"\n[ERROR] {e}", file=sys.stderr)
            return 1

        if args.json:
            print(json.dumps(report, indent=2))
        else:
            self._display_selftest_summary(report)
        return 0 if report["passed"] else 1

    def _display_selftest_summary(self, report: Dict[str, Any]) -> None:
        print("\n" + "=" * 80)
        print("FREEGHOST CORE - SELF-TEST")
        print("=" * 80)
        print(f"Security level: {report['security_level']}")
        print(f"  ID at bank-42:   {report['id_bank']}")
        print(f"  ID at clinic-7:  {report['id_clinic']}")
        print(f"  First submission:  {report['first_outcome']}")
        print(f"  Resubmission:      {report['second_outcome']}")
        for name, ok in report["checks"].items():
            print(f"  [{'OK' if ok else 'FAIL'}] {name}")
        print("=" * 80)

    def run_from_args(self, args_list: Optional[List[str]] = None) -> int:
        """Run the CLI with provided arguments."""
        try:
            args = self.parser.parse_args(args_list)
            if args.command == "selftest":
                return self._execute_selftest_command(args)
            if args.command == "config":
                print(json.dumps(get_config_summary(), indent=2))
                return 0
            self.parser.print_help()
            return 1
        except KeyboardInterrupt:
            print("\nOperation cancelled by user.", file=sys.stderr)
            return 130


def main() -> int:
    """Main entry point for the CLI."""
    configure_logging()
    cli = FreeghostCLI()
    return cli.run_from_args()


if __name__ == "__main__":
    sys.exit(main())
