"""
Book Management API Endpoints

JSON API used by the phone scanner and any other HTTP client. Mirrors the
in-process LibraryService operation for operation; every mutating endpoint
answers with the owner's full book list. Failures use the
``{"success": false, "error": ...}`` payload with a matching status code.
"""

import logging

from flask import Blueprint, current_app, jsonify, request, send_from_directory
from werkzeug.exceptions import HTTPException

from ..errors import BiblionError, InvalidPayloadError

logger = logging.getLogger(__name__)

books_api = Blueprint('books_api', __name__, url_prefix='/api')


def _service():
    return current_app.extensions['biblion']


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidPayloadError('Request body must be a JSON object')
    return data


def _owner(data=None):
    """Acting username from the JSON body, falling back to the query string."""
    if data and data.get('username') is not None:
        return str(data.get('username'))
    return request.args.get('username', '')


@books_api.errorhandler(BiblionError)
def handle_biblion_error(error):
    logger.warning(f"[API] {request.method} {request.path} -> {error.status_code}: {error}")
    return jsonify(error.to_payload()), error.status_code


@books_api.errorhandler(Exception)
def handle_unexpected_error(error):
    if isinstance(error, HTTPException):
        return jsonify({'success': False, 'error': error.description}), error.code
    logger.exception(f"[API] unhandled error on {request.method} {request.path}: {error}")
    return jsonify({'success': False, 'error': 'Internal server error'}), 500


# -------------------------- Books ------------------------------------------

@books_api.route('/books', methods=['GET'])
def list_books():
    return jsonify(_service().list_books(_owner(), request.args.get('library')))


@books_api.route('/save', methods=['POST'])
def save_book():
    data = _json_body()
    owner = _owner(data)
    book = {k: v for k, v in data.items() if k != 'username'}
    logger.info(f"[API] saving book {book.get('title', '')!r} for {owner!r}")
    return jsonify(_service().save_book(owner, book))


@books_api.route('/bulk-save', methods=['POST'])
def bulk_save_books():
    data = _json_body()
    books = data.get('books')
    if not isinstance(books, list):
        raise InvalidPayloadError('"books" must be a list')
    return jsonify(_service().bulk_save_books(_owner(data), books))


@books_api.route('/bulk-delete', methods=['POST'])
def bulk_delete_books():
    data = _json_body()
    isbns = data.get('isbns')
    if not isinstance(isbns, list):
        raise InvalidPayloadError('"isbns" must be a list')
    return jsonify(_service().bulk_delete_books(_owner(data), isbns))


@books_api.route('/books/<isbn>', methods=['DELETE'])
def delete_book(isbn):
    data = request.get_json(silent=True) or {}
    logger.info(f"[API] deleting book {isbn}")
    return jsonify(_service().delete_book(_owner(data if isinstance(data, dict) else None), isbn))


# -------------------------- Loans ------------------------------------------

@books_api.route('/loans', methods=['GET'])
def list_loans():
    return jsonify(_service().list_loans(_owner()))


@books_api.route('/loans/lend', methods=['POST'])
def lend_book():
    data = _json_body()
    return jsonify(_service().lend_book(
        _owner(data), data.get('isbn') or '', data.get('borrowerName') or '', data.get('loanDate')
    ))


@books_api.route('/loans/return', methods=['POST'])
def return_book():
    data = _json_body()
    return jsonify(_service().return_book(_owner(data), data.get('isbn') or ''))


# -------------------------- Config & backups -------------------------------

@books_api.route('/config', methods=['GET'])
def get_config():
    return jsonify(_service().get_config(_owner()))


@books_api.route('/config', methods=['POST'])
def save_config():
    data = _json_body()
    config = {k: v for k, v in data.items() if k != 'username'}
    _service().save_config(_owner(data), config)
    return jsonify({'success': True})


@books_api.route('/backups', methods=['GET'])
def list_backups():
    return jsonify(_service().list_backups(_owner()))


# -------------------------- Metadata ---------------------------------------

@books_api.route('/lookup/<isbn>', methods=['GET'])
def lookup_metadata(isbn):
    metadata = _service().lookup_metadata(isbn)
    if not metadata:
        return jsonify({'success': False, 'error': 'Book not found'}), 404
    return jsonify(metadata)


@books_api.route('/scrape', methods=['GET'])
def scrape_metadata():
    url = request.args.get('url', '')
    if not url:
        return jsonify(None)
    return jsonify(_service().scrape_metadata(url))


# -------------------------- Covers -----------------------------------------

@books_api.route('/covers/<path:filename>', methods=['GET'])
def get_cover(filename):
    # send_from_directory rejects traversal and answers 404 for missing files
    return send_from_directory(_service().covers_dir(_owner()), filename)


@books_api.route('/covers/cache', methods=['POST'])
def cache_cover():
    data = _json_body()
    return jsonify(_service().cache_cover(_owner(data), data.get('isbn') or ''))


@books_api.route('/server-info', methods=['GET'])
def server_info():
    return jsonify({'host': current_app.config.get('HOST'), 'port': current_app.config.get('PORT')})
