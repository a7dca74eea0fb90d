#!/usr/bin/env python3
"""
Biblion IPC bridge.

JSON-lines dispatcher for the desktop shell: one request per stdin line,
one response per stdout line. Channels mirror the HTTP API:

    {"id": 1, "channel": "save-book", "username": "ana", "payload": {...}}
    -> {"id": 1, "ok": true, "result": [...]}
    -> {"event": "books-updated", "username": "ana", "books": [...]}

Failures come back as ``{"id", "ok": false, "error": {"success": false, "error": "..."}}``.
Logging goes to stderr so stdout carries only protocol lines.
"""

import argparse
import json
import logging
import sys
import threading
from typing import Any, Callable, Dict, Optional, TextIO

from biblion import build_library_service
from biblion.errors import BiblionError, InvalidPayloadError
from biblion.services.library_service import LibraryService

logger = logging.getLogger(__name__)

Handler = Callable[[LibraryService, str, Any], Any]


def _isbn_from(payload: Any) -> str:
    if isinstance(payload, dict):
        return str(payload.get('isbn') or '')
    return str(payload or '')


def _library_from(payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        return payload.get('libraryId')
    return None


CHANNELS: Dict[str, Handler] = {
    'get-books': lambda svc, owner, payload: svc.list_books(owner, _library_from(payload)),
    'save-book': lambda svc, owner, payload: svc.save_book(owner, payload),
    'delete-book': lambda svc, owner, payload: svc.delete_book(owner, _isbn_from(payload)),
    'bulk-save-books': lambda svc, owner, payload: svc.bulk_save_books(owner, payload),
    'bulk-delete-books': lambda svc, owner, payload: svc.bulk_delete_books(owner, payload),
    'get-config': lambda svc, owner, payload: svc.get_config(owner),
    'save-config': lambda svc, owner, payload: svc.save_config(owner, payload),
    'repair-metadata': lambda svc, owner, payload: svc.lookup_metadata(_isbn_from(payload)),
    'scrape-metadata': lambda svc, owner, payload: svc.scrape_metadata(
        payload.get('url', '') if isinstance(payload, dict) else str(payload or '')
    ),
}


class IpcDispatcher:
    """Routes IPC requests to the library service and writes JSON lines."""

    def __init__(self, service: LibraryService, out: Optional[TextIO] = None):
        self.service = service
        self.out = out or sys.stdout
        self._write_lock = threading.Lock()
        service.add_listener(self._emit_books_updated)

    def _write(self, message: Dict[str, Any]) -> None:
        with self._write_lock:
            self.out.write(json.dumps(message, ensure_ascii=False) + '\n')
            self.out.flush()

    def _emit_books_updated(self, owner: str, books) -> None:
        self._write({'event': 'books-updated', 'username': owner, 'books': books})

    def dispatch(self, request: Any) -> Dict[str, Any]:
        """Handle one decoded request and return its response envelope."""
        request_id = request.get('id') if isinstance(request, dict) else None
        try:
            if not isinstance(request, dict):
                raise InvalidPayloadError('Request must be a JSON object')
            channel = request.get('channel')
            handler = CHANNELS.get(channel)
            if handler is None:
                raise InvalidPayloadError(f"Unknown channel: {channel!r}")
            owner = str(request.get('username') or '')
            result = handler(self.service, owner, request.get('payload'))
            return {'id': request_id, 'ok': True, 'result': result}
        except BiblionError as e:
            logger.warning(f"[IPC] request {request_id} failed: {e}")
            return {'id': request_id, 'ok': False, 'error': e.to_payload()}
        except Exception as e:
            logger.exception(f"[IPC] unhandled error on request {request_id}: {e}")
            return {'id': request_id, 'ok': False, 'error': {'success': False, 'error': 'Internal server error'}}

    def handle_line(self, line: str) -> Optional[Dict[str, Any]]:
        line = line.strip()
        if not line:
            return None
        try:
            request = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"[IPC] malformed request line: {e}")
            response = {'id': None, 'ok': False, 'error': {'success': False, 'error': 'Malformed JSON request'}}
        else:
            response = self.dispatch(request)
        self._write(response)
        return response

    def run_stdio(self, stream: Optional[TextIO] = None) -> None:
        for line in stream or sys.stdin:
            self.handle_line(line)


def setup_logging(verbose: bool = False):
    """Log to stderr; stdout is reserved for protocol lines."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stderr,
    )


def main(argv=None):
    parser = argparse.ArgumentParser(description="Biblion JSON-lines IPC bridge")
    parser.add_argument('--data-dir', help='Storage root (default: BIBLION_DATA_DIR or ./db_biblion)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    args = parser.parse_args(argv)

    setup_logging(args.verbose)
    overrides = {'DATA_DIR': args.data_dir} if args.data_dir else None
    dispatcher = IpcDispatcher(build_library_service(overrides))
    logger.info("[IPC] ready")
    dispatcher.run_stdio()
    return 0


if __name__ == '__main__':
    sys.exit(main())
