import argparse
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import run_backup
from backup_pipeline import AUDIO, CATEGORIES, BackupFailedError
from credentials import CredentialStore, MissingCredentialError


class TestCLI(unittest.TestCase):
    """
    Tests argument parsing and option resolution.
    """

    def test_defaults(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            args: argparse.Namespace = run_backup.CLI.parse_args(['/tmp/backup', '--user-id', 'u1'])
            options: run_backup.BackupOptions = run_backup.build_options(args)
        self.assertEqual(options.user_id, 'u1')
        self.assertEqual(options.page_size, 500)
        self.assertEqual(options.repositories, [])
        self.assertEqual(options.categories, list(CATEGORIES.values()))
        self.assertEqual(options.backup_dir, Path('/tmp/backup').resolve() / 'Copy')
        self.assertEqual(options.token_path.name, 'token.txt')
        self.assertTrue(options.show_progress)
        self.assertFalse(options.mark_empty_page_terminal)

    def test_environment_fallbacks(self) -> None:
        env: dict[str, str] = {
            'CLOUD_USER_ID': 'env-user',
            'CLOUD_REPOSITORIES': 'TABLET, SyncDrive,,',
            'CLOUD_BASE_URL': 'https://vault.example.test',
        }
        with mock.patch.dict(os.environ, env, clear=True):
            args: argparse.Namespace = run_backup.CLI.parse_args(['/tmp/backup'])
            options: run_backup.BackupOptions = run_backup.build_options(args)
        self.assertEqual(options.user_id, 'env-user')
        self.assertEqual(options.repositories, ['TABLET', 'SyncDrive'])
        self.assertEqual(options.base_url, 'https://vault.example.test')

    def test_explicit_flags(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            args: argparse.Namespace = run_backup.CLI.parse_args([
                '/tmp/backup', '--user-id', 'u1', '--repository', 'A', '--repository', 'B',
                '--category', 'audio', '--page-size', '50', '--mark-empty-page-terminal', '--no-progress',
            ])
            options: run_backup.BackupOptions = run_backup.build_options(args)
        self.assertEqual(options.repositories, ['A', 'B'])
        self.assertEqual(options.categories, [AUDIO])
        self.assertEqual(options.page_size, 50)
        self.assertTrue(options.mark_empty_page_terminal)
        self.assertFalse(options.show_progress)

    def test_prompts_for_backup_dir(self) -> None:
        with mock.patch.dict(os.environ, {'CLOUD_USER_ID': 'u1'}, clear=True):
            args: argparse.Namespace = run_backup.CLI.parse_args([])
            with mock.patch('builtins.input', side_effect=['', '   ', '/tmp/prompted']) as fake_input:
                options: run_backup.BackupOptions = run_backup.build_options(args)
        self.assertEqual(fake_input.call_count, 3)
        self.assertEqual(options.working_dir, Path('/tmp/prompted').resolve())

    def test_missing_user_id(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            args: argparse.Namespace = run_backup.CLI.parse_args(['/tmp/backup'])
            with self.assertRaises(ValueError):
                run_backup.build_options(args)

    def test_missing_user_id_rejected_before_prompting(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            args: argparse.Namespace = run_backup.CLI.parse_args([])
            with mock.patch('builtins.input') as fake_input:
                with self.assertRaises(ValueError):
                    run_backup.build_options(args)
        fake_input.assert_not_called()

    def test_page_size_must_be_positive(self) -> None:
        for bad in ('0', '-5', 'many'):
            with self.subTest(page_size=bad):
                with mock.patch('sys.stderr'):
                    with self.assertRaises(SystemExit):
                        run_backup.CLI.parse_args(['/tmp/backup', '--user-id', 'u1', '--page-size', bad])


class TestMain(unittest.TestCase):
    """
    Tests seed-token prompting and exit codes.
    """

    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.root: Path = Path(self.tmp.name)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_seed_token_prompted_when_missing(self) -> None:
        store = CredentialStore(self.root / 'token.txt')
        with mock.patch('builtins.input', side_effect=['', 'seed-token']):
            run_backup.ensure_seed_token(store)
        self.assertEqual(store.load(), 'seed-token')

    def test_stored_token_not_prompted(self) -> None:
        store = CredentialStore(self.root / 'token.txt')
        store.save('already-there')
        with mock.patch('builtins.input') as fake_input:
            run_backup.ensure_seed_token(store)
        fake_input.assert_not_called()

    def test_exit_code_without_user_id(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertLogs('run_backup', level='ERROR'):
                self.assertEqual(run_backup.main([str(self.root)]), run_backup.EXIT_CONFIG_ERROR)

    def test_exit_codes_from_backup_outcome(self) -> None:
        CredentialStore(self.root / 'Copy' / 'token.txt').save('seed')
        argv: list[str] = [str(self.root), '--user-id', 'u1', '--no-progress']
        with mock.patch.dict(os.environ, {}, clear=True):
            with mock.patch.object(run_backup, 'perform_backup', new=mock.AsyncMock(return_value=None)):
                self.assertEqual(run_backup.main(argv), run_backup.EXIT_OK)

            failure = BackupFailedError({'audio': MissingCredentialError('gone')})
            with mock.patch.object(run_backup, 'perform_backup', new=mock.AsyncMock(side_effect=failure)):
                with mock.patch('sys.stderr'):
                    self.assertEqual(run_backup.main(argv), run_backup.EXIT_BACKUP_FAILED)

    def test_build_pipelines_per_category(self) -> None:
        options = run_backup.BackupOptions(working_dir=self.root, user_id='u1', show_progress=False)
        pipelines = run_backup.build_pipelines(options, gateway=mock.Mock(), credentials=mock.Mock())
        self.assertEqual([p.category.name for p in pipelines], ['documents', 'photos', 'audio'])
        self.assertEqual(pipelines[1].output_dir, self.root / 'Copy' / 'Photos')
        self.assertEqual(pipelines[2].store.path, self.root / 'Copy' / 'audioCheckpoint.json')
        self.assertEqual([p.progress_position for p in pipelines], [0, 1, 2])


if __name__ == '__main__':
    unittest.main()
