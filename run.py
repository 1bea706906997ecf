#!/usr/bin/env python3
"""
Launch agent runner.

    run.py serve                 Status API + scheduler
    run.py backup [-m NAME ...]  Perform models now, one after another
    run.py pulse                 Send one resource pulse
    run.py status                Send one supervisor status report
"""
import argparse
import json
import os
import signal
import sys

from launch_agent import create_app
from launch_agent.errors import LaunchAgentError


def serve(app, args):
    scheduler = app.extensions['launch_agent']['scheduler']
    store = app.extensions['launch_agent']['store']

    def shutdown(signum, frame):
        app.logger.info(f"Received signal {signum}, stopping...")
        scheduler.stop()
        sys.exit(0)

    def reload(signum, frame):
        app.logger.info("Received SIGHUP, reloading configuration...")
        store.reload()

    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGHUP, reload)

    port = int(os.environ.get('PORT', args.port))
    app.run(host=args.host, port=port, debug=False, use_reloader=False)
    return 0


def backup(app, args):
    store = app.extensions['launch_agent']['store']
    scheduler = app.extensions['launch_agent']['scheduler']

    names = args.models or store.snapshot.model_names
    exit_code = 0
    for name in names:
        try:
            result = scheduler.perform_now(name)
        except ValueError as e:
            app.logger.error(str(e))
            exit_code = 1
            continue

        print(json.dumps(result.to_payload()))
        if not result.succeeded:
            exit_code = 1
    return exit_code


def pulse(app, args):
    from launch_agent.monitoring import pulse as pulse_module

    snapshot = app.extensions['launch_agent']['store'].snapshot
    stats = pulse_module.fetch()
    print(json.dumps(stats.to_dict()))
    pulse_module.pulse(stats, snapshot.pulse.webhook)
    return 0


def status(app, args):
    from launch_agent.monitoring import supervisor

    snapshot = app.extensions['launch_agent']['store'].snapshot
    statuses = supervisor.send_daemon_status(snapshot.supervisor, snapshot.pulse.webhook)
    print(json.dumps([s.to_dict() for s in statuses]))
    return 0


COMMANDS = {
    'serve': serve,
    'backup': backup,
    'pulse': pulse,
    'status': status,
}


def build_parser():
    parser = argparse.ArgumentParser(description='Backup, pulse and supervisor agent')
    parser.add_argument('-c', '--config', help='Path to launch.yml')
    parser.add_argument('--env', default=None, help='Flask config name (development/production)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    serve_parser = subparsers.add_parser('serve', help='Run the status API and the scheduler')
    serve_parser.add_argument('--host', default='0.0.0.0')
    serve_parser.add_argument('--port', type=int, default=5000)

    backup_parser = subparsers.add_parser('backup', help='Perform models now')
    backup_parser.add_argument('-m', '--model', dest='models', action='append',
                               help='Model name (repeatable, default: all models)')

    subparsers.add_parser('pulse', help='Send one resource pulse')
    subparsers.add_parser('status', help='Send one supervisor status report')
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        app = create_app(args.env, args.config, start_scheduler=args.command == 'serve')
        return COMMANDS[args.command](app, args)
    except LaunchAgentError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
