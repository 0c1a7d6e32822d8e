"""Tests for input sanitization, hashing and identity helpers."""
from security import (
    SecretHasher,
    get_caller_identity,
    sanitize_filename,
    sanitize_input,
    validate_content_type,
    validate_file_extension,
)
from utils.code_generator import ALPHABET, ID_LENGTH, generate_id, is_valid_id


def test_generate_id_shape():
    ids = {generate_id() for _ in range(200)}
    assert len(ids) == 200
    for item_id in ids:
        assert len(item_id) == ID_LENGTH
        assert set(item_id) <= set(ALPHABET)
    assert len(ALPHABET) == 62


def test_is_valid_id():
    assert is_valid_id('aZ3kP9xQ2m')
    assert not is_valid_id('aZ3kP9xQ2')
    assert not is_valid_id('aZ3kP9xQ2-')


def test_sanitize_filename():
    assert sanitize_filename('../../etc/passwd') == 'etcpasswd'
    assert sanitize_filename('') == 'unnamed_file'
    assert sanitize_filename('...') == 'unnamed_file'
    assert sanitize_filename('report.pdf') == 'report.pdf'


def test_sanitize_input_escapes_and_truncates():
    assert sanitize_input('<b>hi</b>') == '&lt;b&gt;hi&lt;/b&gt;'
    assert sanitize_input('abcdef', max_length=3) == 'abc'
    assert sanitize_input(None) == ''


def test_file_validation():
    assert validate_file_extension('notes.TXT')
    assert validate_file_extension('Makefile')
    assert not validate_file_extension('payload.exe')
    assert not validate_file_extension('image.svg')
    assert validate_content_type('application/pdf')
    assert not validate_content_type('application/x-msdownload')


def test_secret_hasher(hasher):
    digest = hasher.hash('s3cret')
    assert hasher.verify('s3cret', digest)
    assert not hasher.verify('S3cret', digest)


def test_secret_hasher_rejects_garbage_digest():
    assert not SecretHasher().verify('anything', 'not-a-hash')


def test_caller_identity():
    assert get_caller_identity(None) is None
    assert get_caller_identity('   ') is None
    assert get_caller_identity(' alice ') == 'alice'
