# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""skillbench CLI — evaluate and iteratively improve skills from the terminal."""
import argparse
import asyncio
import json
import logging
import sys

from skillbench.config import BenchConfig
from skillbench.evaluation.store import CheckpointStore
from skillbench.iteration.models import IterationState, Round
from skillbench.iteration.report import (
    build_exploration_log, build_report, format_iteration_report, format_progress,
)
from skillbench.models import NotificationType


def main():
    parser = argparse.ArgumentParser(
        prog="skillbench",
        description="Score skill prompts against baselines and search for better variants.",
    )
    parser.add_argument("--state-db", help="Checkpoint database path (default: SKILLBENCH_STATE_DB)")
    sub = parser.add_subparsers(dest="command")

    # skillbench eval workspace.yaml --project demo
    eval_p = sub.add_parser("eval", help="Run an evaluation of every skill x case for a project")
    eval_p.add_argument("workspace", help="Workspace YAML file")
    eval_p.add_argument("--project", required=True, help="Project id")
    eval_p.add_argument("--json", action="store_true", help="Output raw JSON")

    # skillbench iterate workspace.yaml --project demo --seed skill-a
    it_p = sub.add_parser("iterate", help="Run the recompose/evaluate optimization loop")
    it_p.add_argument("workspace", help="Workspace YAML file")
    it_p.add_argument("--project", required=True, help="Project id")
    it_p.add_argument("--seed", required=True, help="Seed skill id")
    it_p.add_argument("--max-rounds", type=int, default=3, help="Maximum rounds (default: 3)")
    it_p.add_argument("--stop-threshold", type=float, help="Stop once a round scores at least this")
    it_p.add_argument("--beam-width", type=int, default=1, help="Candidates per round (default: 1)")
    it_p.add_argument("--plateau-threshold", type=float, default=1.0,
                      help="Minimum gain that counts as progress (default: 1.0)")
    it_p.add_argument("--plateau-rounds", type=int, default=2,
                      help="Sub-threshold rounds per plateau level (default: 2)")
    it_p.add_argument("--mode", choices=["standard", "explore", "adaptive"],
                      help="Strategy mode (default: project mode)")
    it_p.add_argument("--retain", default="", help="Retention rules passed to recompose")
    it_p.add_argument("--segment", action="append", default=[], dest="segments",
                      help="Advantage segment id to use (repeatable)")
    it_p.add_argument("--json", action="store_true", help="Output raw JSON")

    # skillbench report --project demo
    rep_p = sub.add_parser("report", help="Show the last iteration report for a project")
    rep_p.add_argument("--project", required=True, help="Project id")
    rep_p.add_argument("--log", action="store_true", help="Show the full exploration log")
    rep_p.add_argument("--json", action="store_true", help="Output raw JSON")

    # skillbench version
    sub.add_parser("version", help="Show version")

    args = parser.parse_args()

    config = BenchConfig.from_env()
    if args.state_db:
        config.state_db_path = args.state_db
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "version":
        _cmd_version()
    elif args.command == "eval":
        sys.exit(asyncio.run(_cmd_eval(args, config)))
    elif args.command == "iterate":
        sys.exit(asyncio.run(_cmd_iterate(args, config)))
    elif args.command == "report":
        sys.exit(asyncio.run(_cmd_report(args, config)))
    else:
        parser.print_help()


def _cmd_version():
    from skillbench import __version__

    print("skillbench v{}".format(__version__))


def _print_json(data):
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _fail(envelope) -> int:
    print("Error [{}]: {}".format(envelope.error.code, envelope.error.message), file=sys.stderr)
    return 1


def _open_bench(args, config):
    from skillbench.service import SkillBench
    from skillbench.workspace import load_workspace

    workspace = load_workspace(args.workspace)
    return SkillBench(workspace, config=config, store=CheckpointStore(config.state_db_path))


async def _cmd_eval(args, config) -> int:
    bench = _open_bench(args, config)
    await bench.init()
    try:
        if not args.json:
            def _on_event(n):
                if n.type == NotificationType.EVALUATION_PROGRESS and n.data.get("scope") == "manual":
                    print(format_progress(bench.runs.get_progress(n.project_id)))
            bench.bus.subscribe(_on_event)

        if bench.runs.get_progress(args.project).status.value == "paused":
            env = await bench.resume_evaluation(args.project)
        else:
            env = await bench.start_evaluation(args.project)
        if not env.ok:
            return _fail(env)
        await bench.runs.join(args.project)

        env = await bench.get_evaluation_results(args.project, page_size=1000)
        if not env.ok:
            return _fail(env)
        if args.json:
            _print_json(env.data)
            return 0

        print()
        print("Ranking:")
        for entry in env.data["ranking"]:
            print("  #{} {}  {:.1f}/100  ok={} failed={}".format(
                entry["rank"], entry["skill_id"], entry["avg_score"],
                entry["completed_cases"], entry["failed_cases"],
            ))
        failed = [t for t in env.data["items"] if t["status"] == "failed"]
        for t in failed:
            print("  FAILED {} [{}] {}".format(
                t["id"], t["error"]["code"], t["error"]["message"][:120],
            ))
        return 0
    finally:
        await bench.close()


async def _cmd_iterate(args, config) -> int:
    bench = _open_bench(args, config)
    await bench.init()
    try:
        if not args.json:
            def _on_event(n):
                if n.type == NotificationType.ROUND_COMPLETED:
                    d = n.data
                    print("Round {}: {} -> {} (best {})".format(
                        d["round"], ",".join(d["strategies"]),
                        d["avg_score"] if d["avg_score"] is not None else "no winner",
                        d["best_avg_score"],
                    ))
            bench.bus.subscribe(_on_event)

        params = {
            "seed_skill_id": args.seed,
            "max_rounds": args.max_rounds,
            "stop_threshold": args.stop_threshold,
            "beam_width": args.beam_width,
            "plateau_threshold": args.plateau_threshold,
            "plateau_rounds_before_escape": args.plateau_rounds,
            "retention_rules": args.retain,
            "mode": args.mode,
            "selected_segment_ids": args.segments,
        }
        env = await bench.start_iteration(args.project, params)
        if not env.ok:
            return _fail(env)
        await bench.iterations.join(args.project)

        report = bench.iterations.get_report(args.project)
        if args.json:
            _print_json(report.model_dump(mode="json"))
        else:
            print(format_iteration_report(report))
        return 0
    finally:
        await bench.close()


async def _cmd_report(args, config) -> int:
    store = CheckpointStore(config.state_db_path)
    try:
        loaded = await store.load_iteration(args.project)
    finally:
        await store.close()
    if loaded is None:
        print("No iteration recorded for project {}".format(args.project), file=sys.stderr)
        return 1

    state = IterationState.model_validate(loaded[0])
    rounds = [Round.model_validate(r) for r in loaded[1]]
    if args.log:
        _print_json(build_exploration_log(state, rounds).model_dump(mode="json"))
        return 0
    report = build_report(state, rounds)
    if args.json:
        _print_json(report.model_dump(mode="json"))
    else:
        print(format_iteration_report(report))
    return 0
