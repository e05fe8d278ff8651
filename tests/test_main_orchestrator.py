#!/usr/bin/env python3
"""
Unit tests for the reconcile orchestrator.

Commands run end to end against an in-memory directory and a temporary state
file, so plan output, directory writes and recorded state can be checked
together.
"""

import io
import os
import sys
import copy
import json
import shutil
import tempfile
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from ldap_reconcile.config import ConfigurationError
from ldap_reconcile.ldap_client import DirectoryConnectError, DirectoryQueryError
from ldap_reconcile.lifecycle import ObjectController
from ldap_reconcile.main import (
    ReconcileOrchestrator,
    main,
    EXIT_OK,
    EXIT_PARTIAL_FAILURE,
    EXIT_CONFIGURATION_ERROR,
    EXIT_CONNECTION_ERROR,
)
from ldap_reconcile.state import StateStore
from fake_directory import FakeDirectory

DN = 'cn=test,dc=example,dc=com'
NEW_DN = 'cn=renamed,dc=example,dc=com'


class OrchestratorTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix='ldap_reconcile_main_')
        self.state_path = os.path.join(self.temp_dir, 'state.json')
        self.directory = FakeDirectory()
        self.config = {
            'ldap': {
                'server_url': 'ldap://ldap.example.com:389',
                'bind_dn': 'cn=admin,dc=example,dc=com',
                'bind_password': 'admin',
            },
            'logging': {'level': 'INFO'},
            'error_handling': {'max_retries': 1, 'retry_wait_seconds': 0},
            'state_file': self.state_path,
            'modify_mode': 'batch',
            'objects': {
                'test_user': {
                    'dn': DN,
                    'object_classes': ['person'],
                    'attributes': {'cn': ['test'], 'sn': ['test'], 'userPassword': ['password']},
                    'ignore_changes': ['userPassword'],
                }
            },
        }
        self.logging_patch = patch('ldap_reconcile.main.setup_logging')
        self.logging_patch.start()

    def tearDown(self):
        self.logging_patch.stop()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def run_command(self, command, **options):
        self.orchestrator = ReconcileOrchestrator(client=self.directory)
        self.orchestrator.config = copy.deepcopy(self.config)
        with patch('sys.stdout', new_callable=io.StringIO) as out:
            code = self.orchestrator.run(command, **options)
        self.output = out.getvalue()
        return code

    def recorded(self):
        return StateStore(self.state_path).load()

    def writes(self):
        return [action for action in self.directory.actions() if action in ('add', 'modify', 'delete')]


class TestPlanAndApply(OrchestratorTestCase):
    """Test cases for plan and apply."""

    def test_plan_new_object_makes_no_changes(self):
        self.assertEqual(self.run_command('plan'), EXIT_OK)
        self.assertIn('+ test_user (cn=test,dc=example,dc=com): create', self.output)
        self.assertIn('Plan: 1 to create, 0 to update, 0 to replace, 0 to delete', self.output)
        self.assertEqual(self.writes(), [])
        self.assertFalse(os.path.exists(self.state_path))

    def test_apply_creates_and_records(self):
        self.assertEqual(self.run_command('apply'), EXIT_OK)

        entry = self.directory.entries[DN]
        self.assertEqual(entry['userPassword'], ['password'])
        state = self.recorded().get('test_user')
        self.assertEqual(state.id, DN)
        self.assertEqual(self.orchestrator.stats['created'], 1)

    def test_second_apply_changes_nothing(self):
        self.run_command('apply')
        self.directory.calls.clear()

        self.assertEqual(self.run_command('apply'), EXIT_OK)
        self.assertEqual(self.writes(), [])
        self.assertEqual(self.orchestrator.stats['unchanged'], 1)
        self.assertIn('Plan: 0 to create, 0 to update, 0 to replace, 0 to delete', self.output)

    def test_changed_declaration_updates_in_place(self):
        self.run_command('apply')
        self.config['objects']['test_user']['attributes']['sn'] = ['changed']
        self.config['objects']['test_user']['attributes']['userPassword'] = ['new-password']
        self.directory.calls.clear()

        self.assertEqual(self.run_command('apply'), EXIT_OK)

        self.assertEqual(self.writes(), ['modify'])
        entry = self.directory.entries[DN]
        self.assertEqual(entry['sn'], ['changed'])
        self.assertEqual(entry['userPassword'], ['password'])
        self.assertIn('~ test_user', self.output)
        self.assertIn('replace sn', self.output)
        self.assertEqual(self.recorded().get('test_user').attributes['sn'], ['changed'])

    def test_drift_in_directory_is_corrected(self):
        self.run_command('apply')
        self.directory.entries[DN]['description'] = ['added by hand']

        self.assertEqual(self.run_command('apply'), EXIT_OK)
        self.assertNotIn('description', self.directory.entries[DN])

    def test_dn_change_replaces_object(self):
        self.run_command('apply')
        self.config['objects']['test_user']['dn'] = NEW_DN
        self.config['objects']['test_user']['attributes']['cn'] = ['renamed']
        self.directory.calls.clear()

        self.assertEqual(self.run_command('apply'), EXIT_OK)

        self.assertEqual(self.writes(), ['delete', 'add'])
        self.assertIn(f'dn: {DN} -> {NEW_DN}', self.output)
        self.assertNotIn(DN, self.directory.entries)
        self.assertEqual(self.recorded().get('test_user').id, NEW_DN)
        self.assertEqual(self.orchestrator.stats['replaced'], 1)

    def test_dn_change_keeps_ignored_attributes_on_new_entry(self):
        self.run_command('apply')
        self.config['objects']['test_user']['dn'] = NEW_DN

        self.assertEqual(self.run_command('apply'), EXIT_OK)

        self.assertEqual(self.directory.entries[NEW_DN]['userPassword'], ['password'])

    def test_plan_output_masks_password_values(self):
        self.config['objects']['test_user']['ignore_changes'] = []
        self.run_command('apply')
        self.config['objects']['test_user']['attributes']['userPassword'] = ['rotated-secret']

        self.assertEqual(self.run_command('plan'), EXIT_OK)

        self.assertIn('userPassword', self.output)
        self.assertNotIn('rotated-secret', self.output)

    def test_failed_delete_during_replace_keeps_old_state(self):
        self.run_command('apply')
        self.config['objects']['test_user']['dn'] = NEW_DN
        self.directory.fail('delete', 'notAllowedOnNonLeaf')

        self.assertEqual(self.run_command('apply'), EXIT_PARTIAL_FAILURE)

        self.assertNotIn(NEW_DN, self.directory.entries)
        self.assertEqual(self.recorded().get('test_user').dn, DN)

    def test_removed_declaration_deletes_object(self):
        self.run_command('apply')
        self.config['objects'] = {}

        self.assertEqual(self.run_command('apply'), EXIT_OK)

        self.assertNotIn(DN, self.directory.entries)
        self.assertEqual(self.recorded().names(), [])
        self.assertIn('- test_user', self.output)

    def test_object_deleted_outside_is_recreated(self):
        self.run_command('apply')
        del self.directory.entries[DN]

        self.assertEqual(self.run_command('plan'), EXIT_OK)
        self.assertIn('create', self.output)

        self.assertEqual(self.run_command('apply'), EXIT_OK)
        self.assertIn(DN, self.directory.entries)

    def test_one_failure_does_not_stop_other_objects(self):
        self.config['objects']['other_user'] = {
            'dn': 'cn=other,dc=example,dc=com',
            'object_classes': ['person'],
            'attributes': {'cn': ['other'], 'sn': ['other']},
        }
        self.directory.entries[DN] = {'objectClass': ['person'], 'cn': ['test']}

        self.assertEqual(self.run_command('apply'), EXIT_PARTIAL_FAILURE)

        self.assertIn('cn=other,dc=example,dc=com', self.directory.entries)
        self.assertEqual(self.recorded().names(), ['other_user'])
        self.assertEqual(self.orchestrator.stats['created'], 1)
        self.assertEqual(self.orchestrator.stats['failed'], 1)

    def test_read_failure_is_reported_in_plan(self):
        self.run_command('apply')
        with patch.object(ObjectController, 'read', side_effect=DirectoryQueryError('busy')):
            self.assertEqual(self.run_command('plan'), EXIT_PARTIAL_FAILURE)
        self.assertIn('! test_user: busy', self.output)


class TestDestroyAndImport(OrchestratorTestCase):
    """Test cases for destroy and import."""

    def test_destroy_removes_every_recorded_object(self):
        self.run_command('apply')
        self.assertEqual(self.run_command('destroy'), EXIT_OK)
        self.assertEqual(self.directory.entries, {})
        self.assertEqual(self.recorded().names(), [])

    def test_import_uses_declared_ignore_list(self):
        self.directory.entries[DN] = {
            'objectClass': ['person'], 'cn': ['test'], 'sn': ['test'], 'userPassword': ['existing'],
        }

        self.assertEqual(self.run_command('import', name='test_user', dn=DN), EXIT_OK)

        state = self.recorded().get('test_user')
        self.assertEqual(state.id, DN)
        self.assertNotIn('userPassword', state.attributes)
        self.assertEqual(state.ignore_changes, ['userPassword'])

    def test_plan_after_import_is_empty(self):
        self.directory.entries[DN] = {
            'objectClass': ['person'], 'cn': ['test'], 'sn': ['test'], 'userPassword': ['existing'],
        }
        self.run_command('import', name='test_user', dn=DN)
        self.directory.calls.clear()

        self.assertEqual(self.run_command('apply'), EXIT_OK)
        self.assertEqual(self.writes(), [])
        self.assertEqual(self.directory.entries[DN]['userPassword'], ['existing'])

    def test_import_undeclared_object_manages_everything(self):
        self.directory.entries['cn=extra,dc=example,dc=com'] = {'objectClass': ['person'], 'cn': ['extra'],
                                                                'userPassword': ['x']}
        self.run_command('import', name='extra', dn='cn=extra,dc=example,dc=com')
        self.assertIn('userPassword', self.recorded().get('extra').attributes)

    def test_import_already_managed(self):
        self.run_command('apply')
        self.assertEqual(self.run_command('import', name='test_user', dn=DN), EXIT_PARTIAL_FAILURE)

    def test_import_missing_entry(self):
        self.assertEqual(self.run_command('import', name='test_user', dn=DN), EXIT_PARTIAL_FAILURE)
        self.assertEqual(self.recorded().names(), [])


class TestReadOnlyCommands(OrchestratorTestCase):
    """Test cases for show and search."""

    def setUp(self):
        super().setUp()
        self.directory.entries[DN] = {'objectClass': ['person'], 'cn': ['test'], 'sn': ['test']}

    def test_show(self):
        self.assertEqual(self.run_command('show', dn=DN, attributes=None), EXIT_OK)
        result = json.loads(self.output)
        self.assertEqual(result['id'], DN)
        self.assertEqual(result['object_classes'], ['person'])
        self.assertEqual(result['attributes']['sn'], ['test'])

    def test_search(self):
        code = self.run_command('search', base_dn='dc=example,dc=com', scope='wholeSubtree',
                                search_filter=None, attributes=None)
        self.assertEqual(code, EXIT_OK)
        self.assertEqual([entry['dn'] for entry in json.loads(self.output)], [DN])


class TestExitCodes(OrchestratorTestCase):
    """Test cases for error handling in run."""

    def test_unknown_command(self):
        self.assertEqual(self.run_command('refresh'), EXIT_CONFIGURATION_ERROR)

    def test_configuration_error(self):
        orchestrator = ReconcileOrchestrator(config_path='missing.yaml', client=self.directory)
        with patch('ldap_reconcile.main.load_config', side_effect=ConfigurationError('bad config')):
            self.assertEqual(orchestrator.run('plan'), EXIT_CONFIGURATION_ERROR)

    def test_corrupt_state_file(self):
        with open(self.state_path, 'w') as f:
            f.write('{broken')
        self.assertEqual(self.run_command('plan'), EXIT_CONFIGURATION_ERROR)

    @patch('ldap_reconcile.main.DirectoryClient')
    def test_connection_error(self, mock_client):
        mock_client.return_value.connect.side_effect = DirectoryConnectError('server down')
        orchestrator = ReconcileOrchestrator()
        orchestrator.config = copy.deepcopy(self.config)
        self.assertEqual(orchestrator.run('plan'), EXIT_CONNECTION_ERROR)
        mock_client.assert_called_once_with(self.config['ldap'], error_handling=self.config['error_handling'])

    def test_client_is_disconnected_after_run(self):
        self.run_command('plan')
        self.assertEqual(self.directory.actions()[-1], 'disconnect')


class TestHealthCheck(OrchestratorTestCase):

    @patch('ldap_reconcile.main.DirectoryClient')
    def test_healthy(self, mock_client):
        mock_client.return_value.get_server_info.return_value = {}
        orchestrator = ReconcileOrchestrator()
        orchestrator.config = copy.deepcopy(self.config)

        health = orchestrator.health_check()

        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['checks']['configuration']['message'], '1 objects declared')
        mock_client.return_value.disconnect.assert_called_once()

    @patch('ldap_reconcile.main.DirectoryClient')
    def test_unreachable_directory(self, mock_client):
        mock_client.return_value.connect.side_effect = DirectoryConnectError('server down')
        orchestrator = ReconcileOrchestrator()
        orchestrator.config = copy.deepcopy(self.config)

        health = orchestrator.health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['ldap']['status'], 'fail')


class TestCommandLine(unittest.TestCase):
    """Test cases for argument parsing in main."""

    @patch('ldap_reconcile.main.ReconcileOrchestrator')
    def test_show_arguments(self, mock_orchestrator):
        mock_orchestrator.return_value.run.return_value = EXIT_OK
        with self.assertRaises(SystemExit) as ctx:
            main(['--config', 'config.yaml', 'show', DN, '--attr', 'createTimestamp'])

        self.assertEqual(ctx.exception.code, EXIT_OK)
        mock_orchestrator.assert_called_once_with(config_path='config.yaml')
        mock_orchestrator.return_value.run.assert_called_once_with('show', dn=DN, attributes=['createTimestamp'])

    @patch('ldap_reconcile.main.ReconcileOrchestrator')
    def test_exit_code_is_passed_through(self, mock_orchestrator):
        mock_orchestrator.return_value.run.return_value = EXIT_PARTIAL_FAILURE
        with self.assertRaises(SystemExit) as ctx:
            main(['apply'])
        self.assertEqual(ctx.exception.code, EXIT_PARTIAL_FAILURE)
        mock_orchestrator.return_value.run.assert_called_once_with('apply')

    @patch('ldap_reconcile.main.ReconcileOrchestrator')
    def test_no_command(self, mock_orchestrator):
        with patch('sys.stdout', new_callable=io.StringIO):
            with self.assertRaises(SystemExit) as ctx:
                main([])
        self.assertEqual(ctx.exception.code, EXIT_CONFIGURATION_ERROR)
        mock_orchestrator.return_value.run.assert_not_called()


if __name__ == '__main__':
    unittest.main()
