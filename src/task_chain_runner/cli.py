from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.tree import Tree

from .chains import ChainManager
from .config import get_knowledge_min_confidence, get_log_level
from .constants import DEFAULT_TEAM_ID
from .context import ProjectContext
from .errors import TaskChainError, ValidationError
from .io_utils import _load_data_strict
from .logging_utils import configure_logging
from .memory.model import CollaborationType, LearningType, TeamRole, Visibility
from .memory.store import ExecutionMemoryStore
from .memory.team import TeamMemoryStore
from .task_engine.adjuster import DynamicTaskAdjuster
from .task_engine.engine import BATCH_MODES, TaskEngine
from .task_engine.model import TaskStatus, Urgency
from .templates import TemplateLoader


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _ctx(args: argparse.Namespace) -> ProjectContext:
    return ProjectContext.for_project(_resolve_project_dir(args.project_dir))


def _engine(args: argparse.Namespace) -> TaskEngine:
    return TaskEngine(_ctx(args).state_dir)


def _memory(args: argparse.Namespace) -> ExecutionMemoryStore:
    return ExecutionMemoryStore(_ctx(args).memory_dir)


def _write(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + '\n')


def _parse_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _parse_json_arg(raw: Optional[str], flag: str) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"{flag} is not valid JSON: {exc}") from exc


def _load_file(path: str) -> Any:
    file_path = Path(path).expanduser().resolve()
    if not file_path.exists():
        raise ValidationError(f"File not found: {file_path}")
    return _load_data_strict(file_path, {})


# ---------------------------------------------------------------------------
# task
# ---------------------------------------------------------------------------

def _task_create(args: argparse.Namespace) -> int:
    task = _engine(args).create_task(
        name=args.name,
        description=args.description or '',
        notes=args.notes,
        dependencies=args.dependency or [],
        priority=args.priority,
        urgency=args.urgency,
        implementation_guide=args.implementation_guide,
        verification_criteria=args.verification_criteria,
    )
    _write({'task': task.to_dict()})
    return 0


def _task_list(args: argparse.Namespace) -> int:
    tasks = _engine(args).list_tasks(status=args.status)
    _write({'tasks': [task.to_dict() for task in tasks]})
    return 0


def _task_get(args: argparse.Namespace) -> int:
    task = _engine(args).require_task(args.task_id)
    _write({'task': task.to_dict()})
    return 0


def _task_update(args: argparse.Namespace) -> int:
    changes: dict[str, Any] = {}
    for item in args.set or []:
        key, sep, value = item.partition('=')
        if not sep or not key:
            sys.stderr.write(f"Expected KEY=VALUE, got: {item}\n")
            return 2
        changes[key.strip()] = _parse_value(value)
    if args.status:
        changes['status'] = args.status
    if not changes:
        sys.stderr.write("Nothing to update; pass --set KEY=VALUE or --status\n")
        return 2
    task = _engine(args).update_task(args.task_id, changes)
    _write({'task': task.to_dict() if task else None})
    return 0


def _task_delete(args: argparse.Namespace) -> int:
    deleted = _engine(args).delete_task(args.task_id)
    _write({'deleted': deleted, 'task_id': args.task_id})
    return 0


def _task_search(args: argparse.Namespace) -> int:
    tasks = _engine(args).search_tasks(args.query, is_id=args.id)
    _write({'tasks': [task.to_dict() for task in tasks]})
    return 0


def _task_can_execute(args: argparse.Namespace) -> int:
    check = _engine(args).can_execute(args.task_id)
    _write(check.to_dict())
    return 0


def _task_import(args: argparse.Namespace) -> int:
    data = _load_file(args.file)
    items = data.get('tasks') if isinstance(data, dict) else None
    if not isinstance(items, list):
        raise ValidationError("Import file must contain a 'tasks' list")
    tasks = _engine(args).batch_create_or_update(items, mode=args.mode)
    _write({'mode': args.mode, 'tasks': [task.to_dict() for task in tasks]})
    return 0


# ---------------------------------------------------------------------------
# plan
# ---------------------------------------------------------------------------

def _plan_cycles(args: argparse.Namespace) -> int:
    engine = _engine(args)
    memory = _memory(args)
    report = DynamicTaskAdjuster(engine, memory).resolve_dependency_conflicts()
    payload = report.to_dict()
    payload['cycle'] = engine.detect_cycle()
    _write(payload)
    return 0 if not report.has_conflicts else 1


def _plan_order(args: argparse.Namespace) -> int:
    _write({'batches': _engine(args).get_execution_order()})
    return 0


def _plan_show(args: argparse.Namespace) -> int:
    engine = _engine(args)
    tasks = {task.id: task for task in engine.list_tasks()}
    tree = Tree("[bold]Execution plan[/bold]")
    for n, batch in enumerate(engine.get_execution_order(), start=1):
        branch = tree.add(f"Batch {n}")
        for task_id in batch:
            task = tasks[task_id]
            urgency = task.urgency.value if task.urgency else '-'
            label = f"{task.id} [cyan]{task.name}[/cyan] ({task.status.value}, urgency {urgency}, priority {task.priority or '-'})"
            node = branch.add(label)
            for dep in task.dependencies:
                node.add(f"[dim]depends on {dep}[/dim]")
    done = [task for task in tasks.values() if task.is_completed]
    if done:
        completed = tree.add("[green]Completed[/green]")
        for task in done:
            completed.add(f"{task.id} {task.name}")
    Console(file=sys.stdout).print(tree)
    return 0


# ---------------------------------------------------------------------------
# insert
# ---------------------------------------------------------------------------

def _insert(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    adjuster = DynamicTaskAdjuster(
        TaskEngine(ctx.state_dir),
        ExecutionMemoryStore(ctx.memory_dir),
        TemplateLoader(ctx.state_dir),
    )
    request = {
        'title': args.title,
        'description': args.description,
        'priority': args.priority,
        'urgency': args.urgency,
        'insert_after': args.after,
        'insert_before': args.before,
        'context': args.context,
        'execution_id': args.execution_id,
    }
    result = adjuster.insert_task_intelligently({k: v for k, v in request.items() if v is not None})
    _write(result.to_dict())
    return 0 if result.success else 1


# ---------------------------------------------------------------------------
# knowledge / memory
# ---------------------------------------------------------------------------

def _knowledge_record(args: argparse.Namespace) -> int:
    entry = _memory(args).record_knowledge(_load_file(args.file), execution_id=args.execution_id)
    _write({'knowledge': entry.to_dict()})
    return 0


def _knowledge_query(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    min_confidence = args.min_confidence
    if min_confidence is None:
        min_confidence = get_knowledge_min_confidence(ctx.config)
    entries = ExecutionMemoryStore(ctx.memory_dir).query_knowledge(
        domain=args.domain,
        project_type=args.project_type,
        technologies=args.technology,
        min_confidence=min_confidence,
        knowledge_type=args.type,
        limit=args.limit,
    )
    _write({'knowledge': [entry.to_dict() for entry in entries]})
    return 0


def _knowledge_patterns(args: argparse.Namespace) -> int:
    _write(_memory(args).analyze_task_patterns(args.task_type))
    return 0


def _memory_history(args: argparse.Namespace) -> int:
    history = _memory(args).get_task_history(args.task_id)
    _write({'task_id': args.task_id, 'executions': [ctx.to_dict() for ctx in history]})
    return 0


# ---------------------------------------------------------------------------
# team
# ---------------------------------------------------------------------------

def _team(args: argparse.Namespace) -> TeamMemoryStore:
    return TeamMemoryStore(_ctx(args).memory_dir, team_id=args.team)


def _team_member_add(args: argparse.Namespace) -> int:
    member = _team(args).register_member(
        {
            'id': args.id,
            'name': args.name,
            'role': args.role,
            'email': args.email,
            'expertise': args.expertise or [],
        }
    )
    _write({'member': member.to_dict()})
    return 0


def _team_members(args: argparse.Namespace) -> int:
    _write({'team': args.team, 'members': [m.to_dict() for m in _team(args).list_members()]})
    return 0


def _team_share(args: argparse.Namespace) -> int:
    if bool(args.knowledge_id) == bool(args.file):
        raise ValidationError('Pass either a knowledge id or --file')
    knowledge = args.knowledge_id or _load_file(args.file)
    shared = _team(args).share_knowledge(
        knowledge,
        contributor_id=args.contributor,
        visibility=args.visibility,
        applicable_roles=args.role,
    )
    _write({'shared': shared.to_dict()})
    return 0


def _team_knowledge(args: argparse.Namespace) -> int:
    matches = _team(args).get_shared_knowledge(
        args.role,
        technologies=args.technology,
        project_type=args.project_type,
        task_type=args.task_type,
    )
    _write({'team': args.team, 'knowledge': [m.to_dict() for m in matches]})
    return 0


def _team_rate(args: argparse.Namespace) -> int:
    average = _team(args).rate_knowledge(args.shared_id, args.rater, args.rating, comment=args.comment)
    _write({'shared_id': args.shared_id, 'average_rating': round(average, 3)})
    return 0


def _team_collab(args: argparse.Namespace) -> int:
    pattern = _team(args).record_collaboration(
        args.name,
        roles=args.role,
        success=not args.failed,
        description=args.description,
        pattern_type=args.type,
    )
    _write({'pattern': pattern.to_dict()})
    return 0


def _team_recommend(args: argparse.Namespace) -> int:
    patterns = _team(args).recommend_collaboration_patterns(args.role)
    _write({'team': args.team, 'patterns': [p.to_dict() for p in patterns]})
    return 0


def _team_learn(args: argparse.Namespace) -> int:
    record = _team(args).record_learning(_load_file(args.file))
    _write({'learning': record.to_dict()})
    return 0


def _team_verify(args: argparse.Namespace) -> int:
    record = _team(args).verify_learning(args.record_id, args.verifier)
    _write({'learning': record.to_dict()})
    return 0


def _team_learning(args: argparse.Namespace) -> int:
    records = _team(args).get_learning(
        learning_type=args.type,
        roles=args.role,
        technologies=args.technology,
        verified=args.verified,
    )
    _write({'team': args.team, 'learning': [r.to_dict() for r in records]})
    return 0


# ---------------------------------------------------------------------------
# chain
# ---------------------------------------------------------------------------

def _manager(args: argparse.Namespace) -> ChainManager:
    return ChainManager(_ctx(args))


def _chain_run(args: argparse.Namespace) -> int:
    definition = _load_file(args.file)
    config: dict[str, Any] = {}
    if args.strategy:
        config['error_strategy'] = args.strategy
    if args.parallel:
        config['enable_parallel'] = True
    initial = _parse_json_arg(args.data, '--data') or {}
    result = asyncio.run(_manager(args).start(definition, initial_data=initial, config=config or None))
    _write(result.to_dict())
    return 0 if result.status != 'failed' else 1


def _chain_status(args: argparse.Namespace) -> int:
    _write(_manager(args).get_status(args.chain_id))
    return 0


def _chain_list(args: argparse.Namespace) -> int:
    _write({'chains': _manager(args).list_chains()})
    return 0


def _chain_cancel(args: argparse.Namespace) -> int:
    cancelled = _manager(args).cancel(args.chain_id)
    _write({'cancelled': cancelled, 'chain_id': args.chain_id})
    return 0


def _chain_retry(args: argparse.Namespace) -> int:
    result = asyncio.run(_manager(args).retry_step(args.chain_id, args.step))
    _write(result.to_dict())
    return 0 if result.status != 'failed' else 1


def _chain_submit(args: argparse.Namespace) -> int:
    data = _parse_json_arg(args.data, '--data')
    result = asyncio.run(_manager(args).submit_step_output(args.chain_id, args.step_index, data))
    _write(result.to_dict())
    return 0 if result.status != 'failed' else 1


def _chain_resume(args: argparse.Namespace) -> int:
    result = asyncio.run(_manager(args).resume(args.chain_id))
    _write(result.to_dict())
    return 0 if result.status != 'failed' else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Task chain runner CLI')
    parser.add_argument('--project-dir', default=None, help='Target project directory (default: current working directory)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    task = subparsers.add_parser('task', help='Manage tasks')
    task_sub = task.add_subparsers(dest='task_cmd', required=True)
    tcreate = task_sub.add_parser('create', help='Create a task')
    tcreate.add_argument('name')
    tcreate.add_argument('--description', default='')
    tcreate.add_argument('--notes', default=None)
    tcreate.add_argument('--dependency', action='append', help='Task ID this task depends on (repeatable)')
    tcreate.add_argument('--priority', default=None, type=int)
    tcreate.add_argument('--urgency', default=None, choices=[u.value for u in Urgency])
    tcreate.add_argument('--implementation-guide', default=None)
    tcreate.add_argument('--verification-criteria', default=None)
    tcreate.set_defaults(func=_task_create)
    tlist = task_sub.add_parser('list', help='List tasks')
    tlist.add_argument('--status', default=None, choices=[s.value for s in TaskStatus])
    tlist.set_defaults(func=_task_list)
    tget = task_sub.add_parser('get', help='Show one task')
    tget.add_argument('task_id')
    tget.set_defaults(func=_task_get)
    tupdate = task_sub.add_parser('update', help='Update task fields')
    tupdate.add_argument('task_id')
    tupdate.add_argument('--set', action='append', metavar='KEY=VALUE', help='Field to change; VALUE may be JSON')
    tupdate.add_argument('--status', default=None, choices=[s.value for s in TaskStatus])
    tupdate.set_defaults(func=_task_update)
    tdelete = task_sub.add_parser('delete', help='Delete an incomplete task')
    tdelete.add_argument('task_id')
    tdelete.set_defaults(func=_task_delete)
    tsearch = task_sub.add_parser('search', help='Search tasks by text or ID')
    tsearch.add_argument('query')
    tsearch.add_argument('--id', action='store_true', help='Treat the query as a task ID')
    tsearch.set_defaults(func=_task_search)
    tcan = task_sub.add_parser('can-execute', help='Check whether a task can run now')
    tcan.add_argument('task_id')
    tcan.set_defaults(func=_task_can_execute)
    timport = task_sub.add_parser('import', help='Create or update tasks from a YAML/JSON file')
    timport.add_argument('file')
    timport.add_argument('--mode', default='append', choices=list(BATCH_MODES))
    timport.set_defaults(func=_task_import)

    plan = subparsers.add_parser('plan', help='Analyze the dependency graph')
    plan_sub = plan.add_subparsers(dest='plan_cmd', required=True)
    pcycles = plan_sub.add_parser('cycles', help='Report cycles and dangling references')
    pcycles.set_defaults(func=_plan_cycles)
    porder = plan_sub.add_parser('order', help='Show execution batches')
    porder.set_defaults(func=_plan_order)
    pshow = plan_sub.add_parser('show', help='Render the plan as a tree')
    pshow.set_defaults(func=_plan_show)

    insert = subparsers.add_parser('insert', help='Insert a task into the live plan')
    insert.add_argument('title')
    insert.add_argument('--description', required=True)
    insert.add_argument('--priority', default=None, type=int)
    insert.add_argument('--urgency', default=None, choices=[u.value for u in Urgency])
    insert.add_argument('--after', default=None, help='Anchor task ID to run after')
    insert.add_argument('--before', default=None, help='Anchor task ID to run before')
    insert.add_argument('--context', default=None)
    insert.add_argument('--execution-id', default=None)
    insert.set_defaults(func=_insert)

    knowledge = subparsers.add_parser('knowledge', help='Manage the knowledge base')
    knowledge_sub = knowledge.add_subparsers(dest='knowledge_cmd', required=True)
    krecord = knowledge_sub.add_parser('record', help='Record a knowledge entry from a YAML/JSON file')
    krecord.add_argument('file')
    krecord.add_argument('--execution-id', default=None)
    krecord.set_defaults(func=_knowledge_record)
    kquery = knowledge_sub.add_parser('query', help='Query applicable knowledge')
    kquery.add_argument('--domain', default=None)
    kquery.add_argument('--project-type', default=None)
    kquery.add_argument('--technology', action='append', default=None)
    kquery.add_argument('--min-confidence', default=None, type=float)
    kquery.add_argument('--type', default=None)
    kquery.add_argument('--limit', default=None, type=int)
    kquery.set_defaults(func=_knowledge_query)
    kpatterns = knowledge_sub.add_parser('patterns', help='Summarize recorded patterns')
    kpatterns.add_argument('--task-type', default=None)
    kpatterns.set_defaults(func=_knowledge_patterns)

    memory = subparsers.add_parser('memory', help='Inspect execution memory')
    memory_sub = memory.add_subparsers(dest='memory_cmd', required=True)
    mhistory = memory_sub.add_parser('history', help='Execution contexts recorded for a task')
    mhistory.add_argument('task_id')
    mhistory.set_defaults(func=_memory_history)

    team = subparsers.add_parser('team', help='Share knowledge and experience within a team')
    team.add_argument('--team', default=DEFAULT_TEAM_ID, help='Team id (default: %(default)s)')
    team_sub = team.add_subparsers(dest='team_cmd', required=True)
    role_choices = [r.value for r in TeamRole]
    tmadd = team_sub.add_parser('member-add', help='Register a team member')
    tmadd.add_argument('--name', required=True)
    tmadd.add_argument('--role', required=True, choices=role_choices)
    tmadd.add_argument('--id', default=None)
    tmadd.add_argument('--email', default=None)
    tmadd.add_argument('--expertise', action='append', default=None)
    tmadd.set_defaults(func=_team_member_add)
    tmembers = team_sub.add_parser('members', help='List team members')
    tmembers.set_defaults(func=_team_members)
    tshare = team_sub.add_parser('share', help='Share a knowledge entry with the team')
    tshare.add_argument('knowledge_id', nargs='?', default=None)
    tshare.add_argument('--file', default=None, help='Record and share a new entry from a YAML/JSON file')
    tshare.add_argument('--contributor', required=True)
    tshare.add_argument('--visibility', default='team', choices=[v.value for v in Visibility])
    tshare.add_argument('--role', action='append', default=None, choices=role_choices)
    tshare.set_defaults(func=_team_share)
    tknowledge = team_sub.add_parser('knowledge', help='Shared knowledge relevant to a role')
    tknowledge.add_argument('--role', required=True, choices=role_choices)
    tknowledge.add_argument('--technology', action='append', default=None)
    tknowledge.add_argument('--project-type', default=None)
    tknowledge.add_argument('--task-type', default=None)
    tknowledge.set_defaults(func=_team_knowledge)
    trate = team_sub.add_parser('rate', help='Rate a shared knowledge entry from 1 to 5')
    trate.add_argument('shared_id')
    trate.add_argument('--rater', required=True)
    trate.add_argument('--rating', required=True, type=float)
    trate.add_argument('--comment', default=None)
    trate.set_defaults(func=_team_rate)
    tcollab = team_sub.add_parser('collab', help='Record one use of a collaboration pattern')
    tcollab.add_argument('name')
    tcollab.add_argument('--role', action='append', required=True, choices=role_choices)
    tcollab.add_argument('--description', default='')
    tcollab.add_argument('--type', default='team-collaboration', choices=[c.value for c in CollaborationType])
    tcollab.add_argument('--failed', action='store_true')
    tcollab.set_defaults(func=_team_collab)
    trecommend = team_sub.add_parser('recommend', help='Recommend collaboration patterns for roles')
    trecommend.add_argument('--role', action='append', required=True, choices=role_choices)
    trecommend.set_defaults(func=_team_recommend)
    tlearn = team_sub.add_parser('learn', help='Record a learning from a YAML/JSON file')
    tlearn.add_argument('file')
    tlearn.set_defaults(func=_team_learn)
    tverify = team_sub.add_parser('verify', help='Mark a learning record as verified by a member')
    tverify.add_argument('record_id')
    tverify.add_argument('--verifier', required=True)
    tverify.set_defaults(func=_team_verify)
    tlearning = team_sub.add_parser('learning', help='List learning records')
    tlearning.add_argument('--type', default=None, choices=[t.value for t in LearningType])
    tlearning.add_argument('--role', action='append', default=None, choices=role_choices)
    tlearning.add_argument('--technology', action='append', default=None)
    tlearning.add_argument('--verified', dest='verified', action='store_true', default=None)
    tlearning.add_argument('--unverified', dest='verified', action='store_false', default=None)
    tlearning.set_defaults(func=_team_learning)

    chain = subparsers.add_parser('chain', help='Run and control task chains')
    chain_sub = chain.add_subparsers(dest='chain_cmd', required=True)
    crun = chain_sub.add_parser('run', help='Start a chain from a YAML/JSON definition')
    crun.add_argument('file')
    crun.add_argument('--data', default=None, help='Initial chain data as JSON')
    crun.add_argument('--strategy', default=None, choices=['fail_fast', 'continue_on_error', 'retry_on_error', 'skip_on_error'])
    crun.add_argument('--parallel', action='store_true')
    crun.set_defaults(func=_chain_run)
    cstatus = chain_sub.add_parser('status', help='Show chain status')
    cstatus.add_argument('chain_id')
    cstatus.set_defaults(func=_chain_status)
    clist = chain_sub.add_parser('list', help='List recorded chains')
    clist.set_defaults(func=_chain_list)
    ccancel = chain_sub.add_parser('cancel', help='Cancel a chain')
    ccancel.add_argument('chain_id')
    ccancel.set_defaults(func=_chain_cancel)
    cretry = chain_sub.add_parser('retry', help='Retry a failed step')
    cretry.add_argument('chain_id')
    cretry.add_argument('--step', default=None, type=int)
    cretry.set_defaults(func=_chain_retry)
    csubmit = chain_sub.add_parser('submit', help='Submit output for a step waiting on data')
    csubmit.add_argument('chain_id')
    csubmit.add_argument('step_index', type=int)
    csubmit.add_argument('--data', required=True, help='Step output as JSON')
    csubmit.set_defaults(func=_chain_submit)
    cresume = chain_sub.add_parser('resume', help='Resume an interrupted or paused chain')
    cresume.add_argument('chain_id')
    cresume.set_defaults(func=_chain_resume)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, 'func', None)
    if handler is None:
        parser.print_help()
        return 1
    configure_logging(get_log_level(_ctx(args).config))
    try:
        return int(handler(args) or 0)
    except TaskChainError as exc:
        sys.stderr.write(str(exc) + '\n')
        for detail in getattr(exc, 'errors', None) or []:
            sys.stderr.write(f"  - {detail}\n")
        return 1
