"""Tests for the JSON record store: merge-on-save, deletes, partitions, failures."""
import json
import os

import pytest

from biblion.errors import InvalidOwnerError, InvalidPayloadError, StorageWriteError
from biblion.services.record_store import RecordStore, resolve_partition


def _backups(store, owner):
    return sorted(p.name for p in store.resolve(owner).backups_dir.iterdir())


def test_save_creates_canonical_record(store):
    store.save_book('alice', {'isbn': '978-0-13-468599-1', 'title': 'Clean Code'})

    books = store.get_all_books('alice')
    assert len(books) == 1
    book = books[0]
    assert book['isbn'] == '9780134685991'
    assert book['title'] == 'Clean Code'
    assert book['libraryId'] == ''
    assert book['tags'] == []
    assert book['createdAt'] == book['updatedAt'] == '2024-01-01T10:00:00.000Z'


def test_update_overlays_and_keeps_untouched_fields(store, clock):
    store.save_book('alice', {'isbn': '978-0-13-468599-1', 'title': 'Clean Code'})
    clock.advance(hours=1)

    books = store.save_book('alice', {
        'isbn': '9780134685991',
        'status': 'borrowed',
        'borrowerName': 'Marce',
        'loanDate': '2024-01-01',
    })

    assert len(books) == 1
    book = books[0]
    assert book['status'] == 'borrowed'
    assert book['borrowerName'] == 'Marce'
    assert book['loanDate'] == '2024-01-01'
    assert book['title'] == 'Clean Code'
    assert book['createdAt'] == '2024-01-01T10:00:00.000Z'
    assert book['updatedAt'] == '2024-01-01T11:00:00.000Z'


def test_updated_at_advances_within_the_same_millisecond(store):
    store.save_book('alice', {'isbn': '9780134685991', 'title': 'Clean Code'})
    books = store.save_book('alice', {'isbn': '9780134685991', 'status': 'read'})

    book = books[0]
    assert book['createdAt'] == '2024-01-01T10:00:00.000Z'
    assert book['updatedAt'] == '2024-01-01T10:00:00.001Z'

    books = store.save_books('alice', [{'isbn': '9780134685991', 'status': 'reading'}, {'isbn': '9788433920041'}])
    by_isbn = {b['isbn']: b for b in books}
    assert by_isbn['9780134685991']['updatedAt'] == '2024-01-01T10:00:00.002Z'
    assert by_isbn['9788433920041']['createdAt'] == by_isbn['9788433920041']['updatedAt']


def test_updated_at_survives_a_clock_going_backwards(store, clock):
    clock.advance(hours=2)
    store.save_book('alice', {'isbn': '9780134685991'})
    clock.advance(hours=-1)

    book = store.save_book('alice', {'isbn': '9780134685991', 'status': 'read'})[0]
    assert book['updatedAt'] == '2024-01-01T12:00:00.001Z'


def test_new_record_always_lands_unassigned(store):
    books = store.save_book('alice', {'isbn': '9788433920041', 'title': 'Ficciones', 'libraryId': 'estudio'})
    assert books[0]['libraryId'] == ''


def test_update_can_file_into_a_library(store):
    store.save_book('alice', {'isbn': '9788433920041', 'title': 'Ficciones'})
    books = store.save_book('alice', {'isbn': '9788433920041', 'libraryId': 'estudio'})
    assert books[0]['libraryId'] == 'estudio'


def test_isbn_and_created_at_are_immutable(store, clock):
    store.save_book('alice', {'isbn': '9780134685991', 'title': 'Clean Code'})
    clock.advance(days=2)

    books = store.save_book('alice', {
        'isbn': '978-0-13-468599-1',
        'createdAt': '1999-01-01T00:00:00.000Z',
        'title': 'Clean Code (2nd)',
    })

    assert books[0]['isbn'] == '9780134685991'
    assert books[0]['createdAt'] == '2024-01-01T10:00:00.000Z'
    assert books[0]['title'] == 'Clean Code (2nd)'


def test_omitted_tags_are_preserved_and_empty_list_clears(store):
    store.save_book('alice', {'isbn': '9780134685991', 'title': 'Clean Code'})
    store.save_book('alice', {'isbn': '9780134685991', 'tags': ['programming', 'classics']})

    books = store.save_book('alice', {'isbn': '9780134685991', 'title': 'Clean Code'})
    assert books[0]['tags'] == ['programming', 'classics']

    books = store.save_book('alice', {'isbn': '9780134685991', 'tags': []})
    assert books[0]['tags'] == []


def test_null_library_and_tags_count_as_not_provided(store):
    store.save_book('alice', {'isbn': '9780134685991'})
    store.save_book('alice', {'isbn': '9780134685991', 'libraryId': 'estudio', 'tags': ['x']})

    books = store.save_book('alice', {'isbn': '9780134685991', 'libraryId': None, 'tags': None})
    assert books[0]['libraryId'] == 'estudio'
    assert books[0]['tags'] == ['x']


def test_extra_fields_are_persisted(store):
    books = store.save_book('alice', {'isbn': '9780134685991', 'location': 'Estante 3', 'notes': 'firmado'})
    assert books[0]['location'] == 'Estante 3'
    assert books[0]['notes'] == 'firmado'


def test_at_most_one_record_per_canonical_isbn(store):
    for raw in ('978-0-13-468599-1', '9780134685991', '978 0134 685991', '978-0134685991'):
        store.save_book('alice', {'isbn': raw, 'title': raw})
    store.save_book('alice', {'isbn': '9788433920041'})

    isbns = [b['isbn'] for b in store.get_all_books('alice')]
    assert sorted(isbns) == ['9780134685991', '9788433920041']


def test_save_requires_an_isbn(store):
    with pytest.raises(InvalidPayloadError):
        store.save_book('alice', {'title': 'No ISBN'})
    with pytest.raises(InvalidPayloadError):
        store.save_book('alice', {'isbn': '--', 'title': 'Only separators'})
    assert store.get_all_books('alice') == []
    assert _backups(store, 'alice') == []


def test_save_books_folds_batch_with_one_write(store, clock):
    store.save_book('alice', {'isbn': '9780134685991', 'title': 'Clean Code', 'tags': []})
    clock.advance(days=1)

    books = store.save_books('alice', [
        {'isbn': '978-0-13-468599-1', 'tags': ['classics']},
        {'isbn': '9788433920041', 'title': 'Ficciones', 'libraryId': 'estudio'},
        {'isbn': '9788433920041', 'status': 'read'},
    ])

    by_isbn = {b['isbn']: b for b in books}
    assert len(books) == 2
    assert by_isbn['9780134685991']['tags'] == ['classics']
    assert by_isbn['9788433920041']['libraryId'] == ''
    assert by_isbn['9788433920041']['status'] == 'read'
    assert all(b['updatedAt'] == '2024-01-02T10:00:00.000Z' for b in books)
    assert store.get_all_books('alice') == books
    assert _backups(store, 'alice') == ['books_alice_2024-01-01.json', 'books_alice_2024-01-02.json']


def test_save_books_rejects_whole_batch_on_bad_record(store):
    store.save_book('alice', {'isbn': '9780134685991', 'title': 'Clean Code'})
    before = store.get_all_books('alice')

    with pytest.raises(InvalidPayloadError):
        store.save_books('alice', [{'isbn': '9788433920041'}, {'title': 'missing isbn'}])

    assert store.get_all_books('alice') == before


def test_save_books_empty_batch_is_a_no_op(store, clock):
    clock.advance(days=3)
    assert store.save_books('alice', []) == []
    assert _backups(store, 'alice') == []


def test_delete_matches_hyphenated_isbn(store):
    store.save_book('alice', {'isbn': '978-0-13-468599-1', 'title': 'Clean Code'})
    assert store.delete_book('alice', '978-0134685991') is True
    assert store.get_all_books('alice') == []


def test_delete_missing_isbn_touches_nothing(store, clock):
    store.save_book('alice', {'isbn': '9780134685991', 'title': 'Clean Code'})
    clock.advance(days=1)
    books_file = store.resolve('alice').books_file
    content = books_file.read_text(encoding='utf-8')
    before = _backups(store, 'alice')

    assert store.delete_book('alice', '9999999999') is False

    assert _backups(store, 'alice') == before
    assert books_file.read_text(encoding='utf-8') == content


def test_delete_books_batch(store, clock):
    for isbn in ('1111111111', '2222222222', '3333333333'):
        store.save_book('alice', {'isbn': isbn})
    clock.advance(days=1)

    remaining = store.delete_books('alice', ['111-1111111', '3333333333', 'nope'])
    assert [b['isbn'] for b in remaining] == ['2222222222']
    assert 'books_alice_2024-01-02.json' in _backups(store, 'alice')

    clock.advance(days=1)
    assert store.delete_books('alice', ['nope']) == remaining
    assert 'books_alice_2024-01-03.json' not in _backups(store, 'alice')


def test_read_is_fail_open_on_corrupt_file(store):
    partition = store.resolve('alice')
    partition.books_file.write_text('{not json', encoding='utf-8')
    assert store.get_all_books('alice') == []


def test_mutation_keeps_corrupt_file_aside(store):
    partition = store.resolve('alice')
    partition.books_file.write_text('{not json', encoding='utf-8')

    books = store.save_book('alice', {'isbn': '9780134685991'})

    assert [b['isbn'] for b in books] == ['9780134685991']
    corrupt = list(partition.root.glob('books.corrupt-*.json'))
    assert len(corrupt) == 1
    assert corrupt[0].read_text(encoding='utf-8') == '{not json'


def test_write_failure_raises_storage_write_error(store, monkeypatch):
    store.resolve('alice')

    def boom(src, dst):
        raise OSError('disk full')

    monkeypatch.setattr(os, 'replace', boom)
    with pytest.raises(StorageWriteError) as excinfo:
        store.save_book('alice', {'isbn': '9780134685991'})
    assert excinfo.value.owner == 'alice'
    assert 'disk full' in str(excinfo.value)


def test_backup_failure_does_not_block_save(store, monkeypatch):
    monkeypatch.setattr(store.backups, 'backup_name', lambda *args: os.path.join('missing', 'x.json'))
    books = store.save_book('alice', {'isbn': '9780134685991'})
    assert [b['isbn'] for b in books] == ['9780134685991']


def test_written_file_is_json_array(store):
    store.save_book('alice', {'isbn': '9780134685991', 'title': 'Ñandú'})
    with open(store.resolve('alice').books_file, encoding='utf-8') as f:
        data = json.load(f)
    assert data[0]['title'] == 'Ñandú'
    assert not list(store.resolve('alice').root.glob('.books.json.*'))


# -------------------------- Partitions --------------------------------------

def test_legacy_and_empty_owner_share_the_root_partition(tmp_path):
    for owner in ('', None, 'legacy', ' legacy '):
        partition = resolve_partition(tmp_path, owner)
        assert partition.legacy is True
        assert partition.root == tmp_path
        assert partition.key == 'legacy'


def test_named_owner_gets_its_own_partition(tmp_path):
    partition = resolve_partition(tmp_path, 'alice')
    assert partition.root == tmp_path / 'users' / 'alice'
    assert partition.key == 'alice'
    assert partition.legacy is False


def test_configured_legacy_owners(tmp_path):
    store = RecordStore(tmp_path, legacy_owners=('admin', 'legacy'))
    store.save_book('admin', {'isbn': '9780134685991'})
    assert [b['isbn'] for b in store.get_all_books('')] == ['9780134685991']
    assert (tmp_path / 'books.json').exists()


@pytest.mark.parametrize('owner', ['../etc', 'a/b', 'a\\b', '.hidden', '..'])
def test_unsafe_owner_keys_are_rejected(store, owner):
    with pytest.raises(InvalidOwnerError):
        store.get_all_books(owner)
    with pytest.raises(InvalidOwnerError):
        store.get_config(owner)
    with pytest.raises(InvalidOwnerError):
        store.save_book(owner, {'isbn': '9780134685991'})


def test_partitions_are_isolated(store):
    store.save_book('alice', {'isbn': '9780134685991'})
    store.save_book('bob', {'isbn': '9788433920041'})
    assert [b['isbn'] for b in store.get_all_books('alice')] == ['9780134685991']
    assert [b['isbn'] for b in store.get_all_books('bob')] == ['9788433920041']
    assert store.get_all_books('') == []


def test_first_access_creates_partition_files(store, tmp_path):
    assert store.get_all_books('carol') == []
    root = tmp_path / 'users' / 'carol'
    assert json.loads((root / 'books.json').read_text(encoding='utf-8')) == []
    assert (root / 'config.json').exists()
    assert (root / 'backups').is_dir()
    assert (root / 'covers').is_dir()


# -------------------------- Config ------------------------------------------

DEFAULT_CONFIG = {
    'libraries': [{'id': 'default', 'name': 'Principal'}],
    'activeLibraryId': 'default',
    'tags': [],
}


def test_new_owner_gets_default_config(store):
    assert store.get_config('dave') == DEFAULT_CONFIG


def test_corrupt_config_reads_as_default(store):
    store.resolve('dave').config_file.write_text('[]', encoding='utf-8')
    assert store.get_config('dave') == DEFAULT_CONFIG


def test_save_config_replaces_document(store):
    saved = store.save_config('dave', {
        'libraries': [{'id': 'default', 'name': 'Principal'}, {'id': 'estudio', 'name': 'Estudio'}],
        'activeLibraryId': 'unassigned',
        'tags': ['novela', 'ensayo', 'novela'],
    })
    assert saved['tags'] == ['novela', 'ensayo']
    assert store.get_config('dave') == saved
    assert store.get_config('dave')['activeLibraryId'] == 'unassigned'


def test_save_config_rejects_non_objects(store):
    with pytest.raises(InvalidPayloadError):
        store.save_config('dave', ['not', 'a', 'config'])
