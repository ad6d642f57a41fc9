"""
Draft persistence over a local-storage-like key/value store.

Layout (same keys the web client uses in localStorage):
    draft_{prefix}_{id}   -> JSON draft
    draft_list_{prefix}   -> JSON list of draft ids

Drafts older than 24 hours are dropped whenever they are read.
"""

import contextlib
import json
import logging
import random
import string
import threading
import time

from lifescribe import db
from lifescribe.models import StorageItem

logger = logging.getLogger(__name__)

DRAFT_TTL_MS = 24 * 60 * 60 * 1000
DRAFT_TYPES = ('text', 'audio', 'photo', 'video')


def now_ms():
    return int(time.time() * 1000)


class MemoryStorage:
    """In-process dict storage"""

    def __init__(self):
        self._items = {}

    def get_item(self, key):
        return self._items.get(key)

    def set_item(self, key, value):
        self._items[key] = value

    def remove_item(self, key):
        self._items.pop(key, None)

    def keys(self):
        return list(self._items)


class ProfileStorage:
    """
    StorageItem rows of one profile.

    Pass ``app`` when the storage is used outside a request (e.g. from the
    autosave thread) so each call runs in an application context.
    """

    def __init__(self, profile_id, app=None):
        self.profile_id = profile_id
        self.app = app

    def _context(self):
        if self.app is None:
            return contextlib.nullcontext()
        return self.app.app_context()

    def _row(self, key):
        return StorageItem.query.filter_by(profile_id=self.profile_id, key=key).first()

    def get_item(self, key):
        with self._context():
            row = self._row(key)
            return row.value if row else None

    def set_item(self, key, value):
        with self._context():
            row = self._row(key)
            if row:
                row.value = value
            else:
                db.session.add(StorageItem(profile_id=self.profile_id, key=key, value=value))
            try:
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

    def remove_item(self, key):
        with self._context():
            row = self._row(key)
            if row:
                db.session.delete(row)
                try:
                    db.session.commit()
                except Exception:
                    db.session.rollback()
                    raise

    def keys(self):
        with self._context():
            rows = StorageItem.query.filter_by(profile_id=self.profile_id).all()
            return [row.key for row in rows]


def has_content(data):
    """True when any value is a non-blank string, a non-empty list or raw bytes"""
    if not data:
        return False
    for value in data.values():
        if isinstance(value, str) and value.strip():
            return True
        if isinstance(value, (list, tuple)) and len(value) > 0:
            return True
        if isinstance(value, (bytes, bytearray)):
            return True
    return False


class DraftManager:
    """
    Save, list and expire drafts; optionally autosave on a fixed interval.

    ``status`` mirrors what the UI shows next to the composer:
    {'status': idle|saving|saved|error, 'message': str, 'last_saved'?: ms}
    """

    def __init__(self, storage, prefix='unified', autosave_interval=5.0, clock=now_ms):
        self.storage = storage
        self.prefix = prefix
        self.autosave_interval = autosave_interval
        self.clock = clock
        self.status = {'status': 'idle', 'message': ''}
        self.available_drafts = []
        self.current_draft_id = None
        self._stop_event = None
        self._thread = None

    def draft_key(self, draft_id):
        return f'draft_{self.prefix}_{draft_id}'

    def list_key(self):
        return f'draft_list_{self.prefix}'

    @property
    def has_drafts(self):
        return len(self.available_drafts) > 0

    def _read_ids(self):
        stored = self.storage.get_item(self.list_key())
        if not stored:
            return []
        try:
            ids = json.loads(stored)
        except ValueError:
            return []
        return ids if isinstance(ids, list) else []

    def _is_fresh(self, draft):
        return self.clock() - draft.get('timestamp', 0) < DRAFT_TTL_MS

    def refresh(self):
        """Drop expired or unreadable drafts and rewrite the id list"""
        try:
            valid_drafts = []
            valid_ids = []
            for draft_id in self._read_ids():
                key = self.draft_key(draft_id)
                stored = self.storage.get_item(key)
                if not stored:
                    continue
                try:
                    draft = json.loads(stored)
                except ValueError:
                    self.storage.remove_item(key)
                    continue
                if self._is_fresh(draft):
                    valid_drafts.append(draft)
                    valid_ids.append(draft_id)
                else:
                    self.storage.remove_item(key)

            self.storage.set_item(self.list_key(), json.dumps(valid_ids))
            self.available_drafts = valid_drafts
        except Exception:
            logger.exception('Failed to update draft list')
        return self.available_drafts

    def save_draft(self, data):
        """
        Store a draft ({'id', 'type', 'content', 'title'?}); the timestamp is set here.

        Returns:
            dict or None: the stored draft, None when saving failed
        """
        try:
            draft = dict(data)
            if not draft.get('id'):
                raise ValueError('Draft id is required')
            if draft.get('type') not in DRAFT_TYPES:
                raise ValueError(f"Unknown draft type: {draft.get('type')}")
            draft['timestamp'] = self.clock()

            self.storage.set_item(self.draft_key(draft['id']), json.dumps(draft))

            ids = self._read_ids()
            if draft['id'] not in ids:
                ids.append(draft['id'])
                self.storage.set_item(self.list_key(), json.dumps(ids))

            self.status = {
                'status': 'saved',
                'message': 'Your progress is saved',
                'last_saved': draft['timestamp']
            }
        except Exception:
            logger.exception('Failed to save draft')
            self.status = {'status': 'error', 'message': 'Failed to save draft'}
            return None

        self.refresh()
        return draft

    def load_draft(self, draft_id):
        """The draft when it is younger than 24 hours; expired drafts are cleared"""
        try:
            stored = self.storage.get_item(self.draft_key(draft_id))
            if stored:
                draft = json.loads(stored)
                if self._is_fresh(draft):
                    return draft
                self.clear_draft(draft_id)
        except Exception:
            logger.exception('Failed to load draft %s', draft_id)
        return None

    def load_all_drafts(self):
        return self.refresh()

    def clear_draft(self, draft_id):
        try:
            self.storage.remove_item(self.draft_key(draft_id))
            ids = [i for i in self._read_ids() if i != draft_id]
            self.storage.set_item(self.list_key(), json.dumps(ids))
        except Exception:
            logger.exception('Failed to clear draft %s', draft_id)
            return
        self.refresh()

    def clear_all_drafts(self):
        try:
            for draft_id in self._read_ids():
                self.storage.remove_item(self.draft_key(draft_id))
            self.storage.remove_item(self.list_key())
        except Exception:
            logger.exception('Failed to clear all drafts')
            return
        self.available_drafts = []
        self.status = {'status': 'idle', 'message': ''}

    def new_draft_id(self, draft_type):
        suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
        return f'{draft_type}_{self.clock()}_{suffix}'

    def autosave_once(self, get_data, draft_type):
        """One autosave tick: save when the composer holds anything worth keeping"""
        if self.current_draft_id is None:
            return None
        data = get_data()
        if not has_content(data):
            return None
        self.status = {'status': 'saving', 'message': 'Saving draft...'}
        return self.save_draft({
            'id': self.current_draft_id,
            'type': draft_type,
            'content': data
        })

    def start_autosave(self, get_data, draft_type):
        """
        Save ``get_data()`` every ``autosave_interval`` seconds under a fresh draft id.
        A running autosave is replaced.
        """
        self.stop_autosave()
        self.current_draft_id = self.new_draft_id(draft_type)
        stop_event = threading.Event()
        self._stop_event = stop_event

        def loop():
            while not stop_event.wait(self.autosave_interval):
                try:
                    self.autosave_once(get_data, draft_type)
                except Exception:
                    logger.exception('Autosave tick failed')

        self._thread = threading.Thread(target=loop, name=f'autosave-{self.prefix}', daemon=True)
        self._thread.start()
        logger.debug('Autosave started for %s every %ss', self.current_draft_id, self.autosave_interval)
        return self.current_draft_id

    def stop_autosave(self):
        if self._stop_event is not None:
            self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.autosave_interval + 1)
        self._stop_event = None
        self._thread = None
        self.current_draft_id = None
