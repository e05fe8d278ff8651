"""
Main orchestrator for the LDAP reconciler.

This module ties configuration, the recorded state file and the directory
together: it plans which declared objects need to be created, updated,
recreated or deleted, applies those plans, and exposes the result through a
small command line interface.
"""

import sys
import json
import logging
import argparse
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional

from ldap_reconcile.config import load_config, declared_objects, ConfigurationError
from ldap_reconcile.diff import compute_diff
from ldap_reconcile.ldap_client import (
    DirectoryClient,
    DirectoryError,
    DirectoryConnectError,
    NotFoundOrAmbiguous,
    SEARCH_SCOPES,
)
from ldap_reconcile.lifecycle import ObjectController, summarize_changes
from ldap_reconcile.logging_setup import setup_logging, get_logging_stats
from ldap_reconcile.models import ObjectState, MutationOp
from ldap_reconcile.state import StateStore, StateError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_CONNECTION_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4

PLAN_SYMBOLS = {
    'create': '+',
    'update': '~',
    'replace': '-/+',
    'delete': '-',
    'noop': ' ',
}


class ReconcileError(Exception):
    """Raised when a command cannot be carried out."""
    pass


@dataclass
class PlannedChange:
    """What will happen to one managed object on apply."""

    name: str
    action: str
    prior: Optional[ObjectState] = None
    planned: Optional[ObjectState] = None
    ops: List[MutationOp] = field(default_factory=list)

    @property
    def dn(self) -> str:
        state = self.planned or self.prior
        return state.dn if state else ''

    def describe(self) -> List[str]:
        lines = [f"{PLAN_SYMBOLS[self.action]} {self.name} ({self.dn}): {self.action}"]
        if self.action == 'replace':
            lines.append(f"    dn: {self.prior.dn} -> {self.planned.dn}")
        for op in self.ops:
            lines.append(f"    {op.describe()}")
        return lines


class ReconcileOrchestrator:
    """
    Runs plan, apply, destroy and import against the configured directory.

    Each object is handled on its own: a failure is logged and counted, and
    the remaining objects are still processed.
    """

    def __init__(self, config_path: Optional[str] = None, client: Optional[DirectoryClient] = None):
        """
        Initialize the orchestrator.

        Args:
            config_path: Path to configuration file
            client: Directory client to use instead of connecting from configuration
        """
        self.config = None
        self.config_path = config_path
        self.ldap_client = client
        self.controller = None
        self.state = None
        self.plan_errors = {}

        self.stats = {
            'created': 0,
            'updated': 0,
            'replaced': 0,
            'deleted': 0,
            'unchanged': 0,
            'failed': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
        }

    def run(self, command: str, **options) -> int:
        """
        Run one command end to end.

        Args:
            command: One of ``plan``, ``apply``, ``destroy``, ``import``, ``show``, ``search``
            options: Command arguments

        Returns:
            Exit code
        """
        handlers = {
            'plan': self._run_plan,
            'apply': self._run_apply,
            'destroy': self._run_destroy,
            'import': self._run_import,
            'show': self._run_show,
            'search': self._run_search,
        }
        if command not in handlers:
            logger.error(f"Unknown command: {command}")
            return EXIT_CONFIGURATION_ERROR

        try:
            self.stats['start_time'] = datetime.now()
            self._load_configuration()
            self._setup_logging()
            logger.info(f"Starting LDAP reconcile: {command}")
            self._load_state()
            self._connect_ldap()
            return handlers[command](**options)

        except (ConfigurationError, StateError) as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except DirectoryConnectError as e:
            logger.error(f"LDAP connection error: {e}")
            return EXIT_CONNECTION_ERROR
        except (ReconcileError, DirectoryError) as e:
            logger.error(f"{command} failed: {e}")
            return EXIT_PARTIAL_FAILURE
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        if self.config is not None:
            return
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def _load_state(self):
        self.state = StateStore(self.config.get('state_file', 'reconcile-state.json')).load()

    def _connect_ldap(self):
        """Establish LDAP connection unless a client was provided."""
        if self.ldap_client is None:
            client = DirectoryClient(self.config['ldap'], error_handling=self.config.get('error_handling'))
            client.connect()
            self.ldap_client = client
        self.controller = ObjectController(self.ldap_client, self.config.get('modify_mode', 'batch'))

    def plan(self) -> List[PlannedChange]:
        """
        Work out the change for every declared and every recorded object.

        Objects whose refresh fails are left out of the plan and listed in
        ``plan_errors``.
        """
        self.plan_errors = {}
        changes = []
        declared = declared_objects(self.config)

        for name, desired in declared.items():
            try:
                changes.append(self._plan_object(name, desired))
            except DirectoryError as e:
                logger.error(f"Cannot plan object {name}: {e}")
                self.plan_errors[name] = str(e)

        for name in self.state.names():
            if name not in declared:
                changes.append(PlannedChange(name, 'delete', prior=self.state.get(name)))

        return changes

    def _plan_object(self, name: str, desired: ObjectState) -> PlannedChange:
        prior = self.state.get(name)
        if prior is None:
            return PlannedChange(name, 'create', planned=desired)

        try:
            observed = self.controller.read(prior)
        except NotFoundOrAmbiguous as e:
            if not e.missing:
                raise
            logger.warning(f"Object {name} ({prior.dn}) no longer exists and will be recreated")
            return PlannedChange(name, 'create', planned=desired)

        if observed.dn != desired.dn:
            # Recreation writes the full declaration, ignored attributes included
            return PlannedChange(name, 'replace', prior=observed, planned=desired)

        planned = self.controller.plan_adjust(observed, desired)
        ops = compute_diff(observed, planned)
        return PlannedChange(name, 'update' if ops else 'noop', prior=observed, planned=planned, ops=ops)

    def apply(self, changes: List[PlannedChange]) -> bool:
        """
        Carry out planned changes, recording state after each object.

        Returns:
            True if every change was applied
        """
        success = True
        for change in changes:
            try:
                self._apply_change(change)
            except DirectoryError as e:
                success = False
                self.stats['failed'] += 1
                logger.error(f"Failed to {change.action} object {change.name} ({change.dn}): {e}")
        return success

    def _apply_change(self, change: PlannedChange):
        if change.action == 'create':
            self.state.put(change.name, self.controller.create(change.planned))
            self.stats['created'] += 1
        elif change.action in ('update', 'replace'):
            self.state.put(change.name, self.controller.update(change.prior, change.planned))
            self.stats['updated' if change.action == 'update' else 'replaced'] += 1
        elif change.action == 'delete':
            self.controller.delete(change.prior)
            self.state.remove(change.name)
            self.stats['deleted'] += 1
        else:
            refreshed = change.prior.copy()
            refreshed.ignore_changes = list(change.planned.ignore_changes)
            self.state.put(change.name, refreshed)
            self.stats['unchanged'] += 1

    def _run_plan(self) -> int:
        changes = self.plan()
        self._print_plan(changes)
        return EXIT_PARTIAL_FAILURE if self.plan_errors else EXIT_OK

    def _run_apply(self) -> int:
        changes = self.plan()
        self._print_plan(changes)
        success = self.apply(changes)
        self.stats['failed'] += len(self.plan_errors)
        self._finish_stats()
        self._log_summary()
        return EXIT_OK if success and not self.plan_errors else EXIT_PARTIAL_FAILURE

    def _run_destroy(self) -> int:
        changes = [PlannedChange(name, 'delete', prior=self.state.get(name)) for name in self.state.names()]
        self._print_plan(changes)
        success = self.apply(changes)
        self._finish_stats()
        self._log_summary()
        return EXIT_OK if success else EXIT_PARTIAL_FAILURE

    def _run_import(self, name: str, dn: str) -> int:
        """Record an existing entry under ``name`` so later applies manage it."""
        if self.state.get(name) is not None:
            raise ReconcileError(f"Object {name} is already managed ({self.state.get(name).dn})")

        declaration = declared_objects(self.config).get(name)
        ignore_changes = declaration.ignore_changes if declaration else []
        if declaration is None:
            logger.warning(f"Object {name} has no declaration, importing every attribute as managed")

        imported = self.controller.import_object(dn, ignore_changes)
        self.state.put(name, imported)
        print(f"Imported {dn} as {name}")
        return EXIT_OK

    def _run_show(self, dn: str, attributes: Optional[List[str]] = None) -> int:
        entry = self.controller.lookup(dn, attributes)
        result = entry.to_dict()
        result['id'] = entry.dn
        print(json.dumps(result, indent=2))
        return EXIT_OK

    def _run_search(self, base_dn: str, scope: str = 'baseObject', search_filter: Optional[str] = None,
                    attributes: Optional[List[str]] = None) -> int:
        entries = self.controller.search(base_dn, scope, search_filter, attributes)
        print(json.dumps([entry.to_dict() for entry in entries], indent=2))
        return EXIT_OK

    def _print_plan(self, changes: List[PlannedChange]):
        pending = [change for change in changes if change.action != 'noop']
        for change in pending:
            for line in change.describe():
                print(line)
        for name, error in self.plan_errors.items():
            print(f"! {name}: {error}")

        counts = {}
        for change in pending:
            counts[change.action] = counts.get(change.action, 0) + 1
        ops_total = summarize_changes([op for change in pending for op in change.ops])
        print(f"Plan: {counts.get('create', 0)} to create, {counts.get('update', 0)} to update, "
              f"{counts.get('replace', 0)} to replace, {counts.get('delete', 0)} to delete "
              f"({sum(ops_total.values())} attribute changes)")

    def _finish_stats(self):
        self.stats['end_time'] = datetime.now()
        self.stats['runtime_seconds'] = (
            self.stats['end_time'] - self.stats['start_time']
        ).total_seconds()

    def _log_summary(self):
        """Log final statistics."""
        stats = self.stats
        logger.info("=== Reconcile Summary ===")
        logger.info(f"Total runtime: {stats['runtime_seconds']:.2f} seconds")
        logger.info(f"Created: {stats['created']}")
        logger.info(f"Updated: {stats['updated']}")
        logger.info(f"Replaced: {stats['replaced']}")
        logger.info(f"Deleted: {stats['deleted']}")
        logger.info(f"Unchanged: {stats['unchanged']}")
        logger.info(f"Failed: {stats['failed']}")

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration, state file and directory connectivity.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': f"{len(self.config.get('objects', {}))} objects declared"
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            self._load_state()
            health_status['checks']['state'] = {
                'status': 'pass',
                'message': f"{len(self.state.names())} objects recorded"
            }
        except StateError as e:
            health_status['checks']['state'] = {'status': 'fail', 'message': str(e)}
            health_status['status'] = 'unhealthy'

        test_client = DirectoryClient(self.config['ldap'])
        try:
            test_client.connect(max_retries=1, retry_wait=0)
            health_status['checks']['ldap'] = {
                'status': 'pass',
                'message': 'LDAP connection successful',
                'server': test_client.get_server_info(),
            }
        except DirectoryConnectError as e:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'
        finally:
            test_client.disconnect()

        health_status['checks']['logging'] = {'status': 'pass', 'details': get_logging_stats()}
        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            self.ldap_client.disconnect()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Reconcile declared LDAP objects against a directory')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                        help='Check configuration and connectivity instead of running a command')

    subparsers = parser.add_subparsers(dest='command')
    subparsers.add_parser('plan', help='Show changes needed to match the declared objects')
    subparsers.add_parser('apply', help='Apply changes needed to match the declared objects')
    subparsers.add_parser('destroy', help='Delete every recorded object')

    import_parser = subparsers.add_parser('import', help='Start managing an existing entry')
    import_parser.add_argument('name', help='Object name in the configuration')
    import_parser.add_argument('dn', help='DN of the existing entry')

    show_parser = subparsers.add_parser('show', help='Print an entry as JSON')
    show_parser.add_argument('dn')
    show_parser.add_argument('--attr', action='append', dest='attributes',
                             help='Additional (operational) attribute to request')

    search_parser = subparsers.add_parser('search', help='Search entries and print them as JSON')
    search_parser.add_argument('--base-dn', required=True)
    search_parser.add_argument('--scope', choices=sorted(SEARCH_SCOPES), default='baseObject')
    search_parser.add_argument('--filter', dest='search_filter')
    search_parser.add_argument('--attr', action='append', dest='attributes',
                               help='Additional (operational) attribute to request')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    parser = build_parser()
    args = parser.parse_args(argv)

    orchestrator = ReconcileOrchestrator(config_path=args.config)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2, default=str))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    if not args.command:
        parser.print_help()
        sys.exit(EXIT_CONFIGURATION_ERROR)

    options = {key: value for key, value in vars(args).items()
               if key not in ('config', 'health_check', 'command')}
    sys.exit(orchestrator.run(args.command, **options))


if __name__ == "__main__":
    main()
