import argparse
import json
import sys
import time
from typing import Any, Dict, List, Optional

import structlog

from .config import EngineConfig, get_config_summary
from .exceptions import CaptureError, HumanityGateError
from .fingerprint import FingerprintCanonicalizer
from .fusion import calculate_fusion_quality_metrics
from .registration_gate import RegistrationEngine
from .simulation import SyntheticSubject, measure_match_rates, summarize_frames
from .utils import configure_logging

# Initialize structured logger
logger = structlog.get_logger(__name__)


class HumanityGateCLI:
    """Main command-line interface for the HUMANITY GATE engine."""

    def __init__(self) -> None:
        self.parser = self._create_argument_parser()

    def _create_argument_parser(self) -> argparse.ArgumentParser:
        """Creates the argument parser for the CLI."""
        parser = argparse.ArgumentParser(
            prog="humanity-gate",
            description="HUMANITY GATE - Sybil-resistant multimodal registration engine",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--log-level",
            default=None,
            help="Override LOG_LEVEL for this run.",
        )

        subparsers = parser.add_subparsers(dest="command", required=True)
        self._add_config_command(subparsers)
        self._add_simulate_command(subparsers)
        self._add_evaluate_command(subparsers)

        return parser

    def _add_config_command(self, subparsers) -> None:
        subparsers.add_parser("config", help="Print the effective configuration.")

    def _add_simulate_command(self, subparsers) -> None:
        """Add the 'simulate' command and its arguments."""
        simulate_parser = subparsers.add_parser(
            "simulate",
            help="Register synthetic subjects end to end, including a duplicate attempt.",
        )
        simulate_parser.add_argument(
            "--subjects",
            type=int,
            default=3,
            help="Number of distinct synthetic subjects to register. Default: 3.",
        )
        simulate_parser.add_argument(
            "--seed",
            type=int,
            default=42,
            help="Base seed of the synthetic population. Default: 42.",
        )

    def _add_evaluate_command(self, subparsers) -> None:
        """Add the 'evaluate' command and its arguments."""
        evaluate_parser = subparsers.add_parser(
            "evaluate",
            help="Measure false match / false non-match rates on synthetic subjects.",
        )
        evaluate_parser.add_argument(
            "--subjects",
            type=int,
            default=20,
            help="Number of synthetic subjects. Default: 20.",
        )
        evaluate_parser.add_argument(
            "--match-distance",
            type=float,
            default=None,
            help="Match distance to evaluate. Default: the configured d_min.",
        )
        evaluate_parser.add_argument(
            "--seed",
            type=int,
            default=42,
            help="Base seed of the synthetic population. Default: 42.",
        )

    def _execute_config_command(self, args: argparse.Namespace) -> int:
        print(json.dumps(get_config_summary(EngineConfig.from_environment()), indent=2))
        return 0

    def _register(
        self, engine: RegistrationEngine, user_ref: str, subject: SyntheticSubject,
        session_seed: int,
    ) -> Dict[str, Any]:
        session_id = engine.begin_session(user_ref)
        started_at = time.time()
        rejected = 0
        for modality, sample, offset in subject.session_frames(session_seed=session_seed):
            try:
                engine.submit_frame(session_id, modality, sample, started_at + offset)
            except CaptureError:
                rejected += 1
        decision = engine.finalize(session_id).to_dict()
        decision["rejected_frames"] = rejected
        return decision

    def _execute_simulate_command(self, args: argparse.Namespace) -> int:
        """Run synthetic registrations and print every decision."""
        if args.subjects < 1:
            print("[ERROR] --subjects must be at least 1", file=sys.stderr)
            return 1

        subjects = [SyntheticSubject(seed=args.seed + i) for i in range(args.subjects)]
        decisions: List[Dict[str, Any]] = []

        try:
            with RegistrationEngine(EngineConfig.from_environment()) as engine:
                for i, subject in enumerate(subjects):
                    decisions.append(
                        self._register(engine, f"user-{i + 1}", subject, session_seed=i)
                    )

                # The first subject returns under a new account
                decisions.append(
                    self._register(engine, "user-returning", subjects[0], session_seed=99)
                )

                fingerprint_metrics = calculate_fusion_quality_metrics(
                    engine.canonicalizer.canonical_vector(
                        summarize_frames(
                            subjects[0].session_frames(),
                            facial_dim=engine.config.fingerprint.facial_dim,
                        )
                    )[0]
                )
                stats = engine.stats()
        except HumanityGateError as e:
            logger.error("Simulation failed", **e.to_dict())
            print(f"\n[ERROR] {e}", file=sys.stderr)
            return 1

        self._display_simulation_summary(decisions, fingerprint_metrics, stats)
        return 0

    def _display_simulation_summary(
        self,
        decisions: List[Dict[str, Any]],
        fingerprint_metrics: Dict[str, float],
        stats: Dict[str, Any],
    ) -> None:
        print("\n" + "=" * 80)
        print("HUMANITY GATE - SIMULATION SUMMARY")
        print("=" * 80)
        for decision in decisions:
            score = decision["composite_score"]
            score_text = f"{score:6.2f}" if score is not None else "   n/a"
            matched = decision["matched_user_ref"]
            print(
                f"  {decision['user_ref']:<16} {decision['outcome']:<26} "
                f"composite={score_text}"
                + (f"  matched={matched}" if matched else "")
            )
        print("-" * 80)
        print(
            "Fingerprint norm={norm:.3f} dynamic_range={dynamic_range:.3f} "
            "uniqueness_ratio={uniqueness_ratio:.3f}".format(**fingerprint_metrics)
        )
        print(f"Index: {json.dumps(stats['index'])}")
        print("=" * 80)

    def _execute_evaluate_command(self, args: argparse.Namespace) -> int:
        """Print FMR/FNMR at the requested match distance."""
        if args.subjects < 2:
            print("[ERROR] --subjects must be at least 2", file=sys.stderr)
            return 1

        config = EngineConfig.from_environment()
        match_distance = (
            args.match_distance
            if args.match_distance is not None
            else config.index.match_distance
        )
        results = measure_match_rates(
            [SyntheticSubject(seed=args.seed + i) for i in range(args.subjects)],
            match_distance,
            FingerprintCanonicalizer(config.fingerprint),
        )

        print(json.dumps(results, indent=2))
        return 0

    def run_from_args(self, args_list: Optional[List[str]] = None) -> int:
        """Run the CLI with provided arguments."""
        try:
            args = self.parser.parse_args(args_list)
            configure_logging(level=args.log_level)
            if args.command == "config":
                return self._execute_config_command(args)
            if args.command == "simulate":
                return self._execute_simulate_command(args)
            if args.command == "evaluate":
                return self._execute_evaluate_command(args)
            self.parser.print_help()
            return 1
        except KeyboardInterrupt:
            print("\nOperation cancelled by user.", file=sys.stderr)
            return 130


def main() -> int:
    """Main entry point for the CLI."""
    cli = HumanityGateCLI()
    return cli.run_from_args()


if __name__ == "__main__":
    sys.exit(main())
