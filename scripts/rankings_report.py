#!/usr/bin/env python3
"""Print learned method rankings, model rankings and failure memory for a domain."""

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

logging.basicConfig(level=logging.WARNING, format="%(asctime)s [rankings] %(levelname)s %(message)s")


def _print_methods(db: str, domain: str) -> None:
    from pilot.ranking.ranker import DEFAULT_METHOD_ORDER, rank_methods
    from stores.rankings import MethodPerformanceStore

    store = MethodPerformanceStore(db)
    print(f"Method rankings for {domain}")
    for kind in DEFAULT_METHOD_ORDER:
        stats = store.stats(domain, kind)
        if not stats:
            continue
        order = rank_methods(kind, stats)
        print(f"  {kind}: {' > '.join(order)}")
        for name, s in sorted(stats.items(), key=lambda kv: -kv[1].success_rate):
            print(f"      {name:<14} {s.successes:>4}/{s.attempts:<4} {s.success_rate:5.1f}%  ~{s.cost:.0f}ms")


def _print_models(db: str, owner: str, task_type: str, domain: str) -> None:
    from pilot.common.config import PipelineConfig
    from pilot.ranking.ranker import rank_models
    from stores.rankings import ModelPerformanceStore

    stats = ModelPerformanceStore(db).stats(owner, task_type, domain)
    chains = PipelineConfig.from_env().model_chains
    print(f"\nModel rankings for {owner}/{task_type}")
    for strategy, chain in chains.items():
        print(f"  {strategy}: {' > '.join(rank_models(chain, stats))}")
    for name, s in stats.items():
        print(f"      {name:<28} {s.successes:>4}/{s.attempts:<4} {s.success_rate:5.1f}%  ${s.cost:.4f}")


def _print_failures(db: str, domain: str) -> None:
    from stores.failure_memory import FailureMemory

    entries = FailureMemory(db).entries(domain)
    print(f"\nFailure memory for {domain}: {len(entries)} entries")
    for e in entries:
        fix = e.solution_method or "-"
        if e.solution_selector:
            fix += f" ({e.solution_selector})"
        print(f"  [{e.last_seen_at[:16]}] {e.action_kind} {e.selector[:50]}  fix={fix}  "
              f"used={e.times_used} ok={e.success_rate:.0f}%")


def main():
    parser = argparse.ArgumentParser(description="Show adaptive rankings and failure memory")
    parser.add_argument("domain", help="Site domain, e.g. example.com")
    parser.add_argument("--db", default="data/taskpilot.db", help="Path to SQLite DB")
    parser.add_argument("--owner", help="Owner id for model rankings")
    parser.add_argument("--task-type", default="general", help="Task type for model rankings")
    args = parser.parse_args()

    try:
        _print_methods(args.db, args.domain)
        if args.owner:
            _print_models(args.db, args.owner, args.task_type, args.domain)
        _print_failures(args.db, args.domain)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
