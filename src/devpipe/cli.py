from __future__ import annotations

import argparse
import json
import os
import sys

import httpx


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='devpipe', description='Drive the autonomous development pipeline')
    parser.add_argument(
        '--api-base',
        default=os.getenv('DEVPIPE_API_BASE', 'http://127.0.0.1:8000'),
        help='Pipeline API base URL',
    )

    sub = parser.add_subparsers(dest='command', required=True)

    create = sub.add_parser('create', help='Create a feature')
    create.add_argument('description', help='Feature description')
    create.add_argument('--priority', default='normal', choices=['low', 'normal', 'high', 'critical'])
    create.add_argument('--status', default=None, choices=['pending', 'in_progress', 'complete', 'failed'])
    create.add_argument('--metadata-json', default='', help='Feature metadata as a JSON object')
    create.add_argument('--skip-initial-task', action='store_true', help='Do not create the first architect task')

    features = sub.add_parser('features', help='List features')
    features.add_argument('--status', default=None)
    features.add_argument('--priority', default=None)
    features.add_argument('--limit', type=int, default=20)

    feature = sub.add_parser('feature', help='Show one feature with its tasks')
    feature.add_argument('feature_id')

    priority = sub.add_parser('priority', help='Change feature priority')
    priority.add_argument('feature_id')
    priority.add_argument('priority', choices=['low', 'normal', 'high', 'critical'])

    transitions = sub.add_parser('transitions', help='List feature state transitions')
    transitions.add_argument('feature_id')

    task = sub.add_parser('task', help='Show one task')
    task.add_argument('task_id', type=int)

    complete = sub.add_parser('complete-task', help='Report completion of a running task')
    complete.add_argument('task_id', type=int, nargs='?', default=None, help='Task id (default: $DEVPIPE_TASK_ID)')
    complete.add_argument('--status', default='complete', choices=['complete', 'failed'])
    source = complete.add_mutually_exclusive_group(required=True)
    source.add_argument('--output-json', help='Completion output as a JSON object')
    source.add_argument('--output-file', help='Path to a file holding the completion output JSON')

    progress = sub.add_parser('progress-task', help='Report progress on a running task')
    progress.add_argument('task_id', type=int, nargs='?', default=None, help='Task id (default: $DEVPIPE_TASK_ID)')
    progress.add_argument('--message', required=True)
    progress.add_argument('--step', default=None)
    progress.add_argument('--percent', type=float, default=None)

    sub.add_parser('start', help='Start development mode')
    sub.add_parser('stop', help='Stop development mode')
    sub.add_parser('status', help='Show development status')
    sub.add_parser('pause', help='Pause the scheduler')
    sub.add_parser('resume', help='Resume the scheduler')
    sub.add_parser('progress', help='Show progress report')
    sub.add_parser('metrics', help='Show scheduler metrics')
    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2))


def _load_object(text: str, *, flag_name: str) -> dict:
    try:
        value = json.loads(text)
    except ValueError as exc:
        raise ValueError(f'{flag_name} is not valid JSON: {exc}') from exc
    if not isinstance(value, dict):
        raise ValueError(f'{flag_name} must be a JSON object')
    return value


def _completion_output(args: argparse.Namespace) -> dict:
    if args.output_file:
        with open(args.output_file, encoding='utf-8') as handle:
            return _load_object(handle.read(), flag_name='--output-file')
    return _load_object(args.output_json, flag_name='--output-json')


def _resolve_task_id(value: int | None) -> int:
    if value is not None:
        return int(value)
    raw = str(os.getenv('DEVPIPE_TASK_ID', '') or '').strip()
    if not raw:
        raise ValueError('task id is required (argument or DEVPIPE_TASK_ID)')
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f'DEVPIPE_TASK_ID is not a number: {raw}') from exc


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.api_base.rstrip('/')

    with httpx.Client(timeout=60) as client:
        if args.command == 'create':
            try:
                metadata = _load_object(args.metadata_json, flag_name='--metadata-json') if args.metadata_json else None
            except ValueError as exc:
                parser.error(str(exc))
                return 2
            response = client.post(
                f'{base}/api/features',
                json={
                    'description': args.description,
                    'priority': args.priority,
                    'status': args.status,
                    'metadata': metadata,
                    'skip_initial_task': bool(args.skip_initial_task),
                },
            )
        elif args.command == 'features':
            params = {'limit': int(args.limit)}
            if args.status:
                params['status'] = args.status
            if args.priority:
                params['priority'] = args.priority
            response = client.get(f'{base}/api/features', params=params)
        elif args.command == 'feature':
            response = client.get(f'{base}/api/features/{args.feature_id}')
        elif args.command == 'priority':
            response = client.post(f'{base}/api/features/{args.feature_id}/priority', json={'priority': args.priority})
        elif args.command == 'transitions':
            response = client.get(f'{base}/api/features/{args.feature_id}/transitions')
        elif args.command == 'task':
            response = client.get(f'{base}/api/tasks/{args.task_id}')
        elif args.command == 'complete-task':
            try:
                task_id = _resolve_task_id(args.task_id)
                output = _completion_output(args)
            except (OSError, ValueError) as exc:
                parser.error(str(exc))
                return 2
            response = client.post(
                f'{base}/api/tasks/{task_id}/completion',
                json={'status': args.status, 'output': output},
            )
        elif args.command == 'progress-task':
            try:
                task_id = _resolve_task_id(args.task_id)
            except ValueError as exc:
                parser.error(str(exc))
                return 2
            response = client.post(
                f'{base}/api/tasks/{task_id}/progress',
                json={'progress': args.message, 'current_step': args.step, 'percent_complete': args.percent},
            )
        elif args.command == 'start':
            response = client.post(f'{base}/api/development/start')
        elif args.command == 'stop':
            response = client.post(f'{base}/api/development/stop')
        elif args.command == 'status':
            response = client.get(f'{base}/api/development/status')
        elif args.command == 'pause':
            response = client.post(f'{base}/api/orchestrator/pause')
        elif args.command == 'resume':
            response = client.post(f'{base}/api/orchestrator/resume')
        elif args.command == 'progress':
            response = client.get(f'{base}/api/progress')
        elif args.command == 'metrics':
            response = client.get(f'{base}/api/metrics')
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
