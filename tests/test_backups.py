"""Tests for dated backup snapshots and their rotation."""
import json
from datetime import datetime, timezone

from biblion.services.backup_service import BookBackupService


def test_one_backup_per_day_holds_latest_pre_mutation_state(store):
    store.save_book('alice', {'isbn': '1111111111'})
    store.save_book('alice', {'isbn': '2222222222'})

    backups_dir = store.resolve('alice').backups_dir
    files = sorted(p.name for p in backups_dir.iterdir())
    assert files == ['books_alice_2024-01-01.json']

    snapshot = json.loads((backups_dir / files[0]).read_text(encoding='utf-8'))
    assert [b['isbn'] for b in snapshot] == ['1111111111']


def test_rotation_keeps_ten_most_recent(store, clock):
    for day in range(15):
        store.save_book('alice', {'isbn': f'97800000000{day:02d}'})
        clock.advance(days=1)

    names = sorted(p.name for p in store.resolve('alice').backups_dir.iterdir())
    assert len(names) == 10
    assert names[0] == 'books_alice_2024-01-06.json'
    assert names[-1] == 'books_alice_2024-01-15.json'


def test_rotation_is_per_owner(store, clock):
    for _ in range(12):
        store.save_book('alice', {'isbn': '1111111111'})
        store.save_book('', {'isbn': '2222222222'})
        clock.advance(days=1)

    assert len(store.list_backups('alice')) == 10
    legacy = store.list_backups('')
    assert len(legacy) == 10
    assert all(info.name.startswith('books_legacy_') for info in legacy)


def test_list_backups_newest_first(store, clock):
    store.save_book('alice', {'isbn': '1111111111'})
    clock.advance(days=1)
    store.save_book('alice', {'isbn': '2222222222'})

    infos = store.list_backups('alice')
    assert [i.date for i in infos] == ['2024-01-02', '2024-01-01']
    data = infos[0].to_dict()
    assert data['name'] == 'books_alice_2024-01-02.json'
    assert data['owner'] == 'alice'
    assert data['file_size'] > 0
    assert 'modified_at' in data


def test_backup_failure_is_swallowed(tmp_path):
    blocker = tmp_path / 'not-a-dir'
    blocker.write_text('x', encoding='utf-8')
    service = BookBackupService()

    result = service.create_backup(blocker / 'backups', 'alice', [], datetime(2024, 1, 1, tzinfo=timezone.utc))

    assert result is None


def test_backup_date_uses_utc_calendar_day(tmp_path):
    service = BookBackupService()
    moment = datetime(2024, 3, 1, 23, 30, tzinfo=timezone.utc)
    path = service.create_backup(tmp_path, 'alice', [{'isbn': '1'}], moment)
    assert path.name == 'books_alice_2024-03-01.json'


def test_rotation_ignores_other_files(tmp_path):
    service = BookBackupService(retention=2)
    (tmp_path / 'notes.txt').write_text('keep me', encoding='utf-8')
    for day in (1, 2, 3):
        service.create_backup(tmp_path, 'alice', [], datetime(2024, 1, day, tzinfo=timezone.utc))

    names = sorted(p.name for p in tmp_path.iterdir())
    assert names == ['books_alice_2024-01-02.json', 'books_alice_2024-01-03.json', 'notes.txt']
