# -*- coding: utf-8 -*-
"""
PVMSS Database - Layer 2
SQLite wrapper for the portal settings and the console audit log.
"""
# Console sessions and Proxmox cookies never go in here, only metadata.

import os
import json
import logging
import threading
import hashlib
import hmac
import sqlite3
from datetime import datetime, timedelta

from pvmss.constants import DATABASE_FILE, AUDIT_KEY_FILE


class PVMSSDB:
    """
    SQLite database wrapper

    one connection per thread (sqlite objects can't cross threads),
    audit rows are HMAC signed so tampering shows up in verify_audit_log_integrity()
    """

    def __init__(self, db_path: str = DATABASE_FILE, key_file: str = AUDIT_KEY_FILE):
        self.db_path = db_path
        self.key_file = key_file
        self.audit_key = None
        self._local = threading.local()

        db_dir = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(db_dir, exist_ok=True)

        self._init_audit_key()
        self._init_db()
        logging.info(f"DB initialized: {self.db_path}")

    def _init_audit_key(self):
        """load or create the HMAC key for audit signatures"""
        if os.path.exists(self.key_file):
            with open(self.key_file, 'rb') as f:
                key = f.read()
            if len(key) == 32:
                self.audit_key = key
                return
            logging.warning("Invalid audit key length, regenerating...")

        key = os.urandom(32)
        with open(self.key_file, 'wb') as f:
            f.write(key)
        try:
            os.chmod(self.key_file, 0o600)
        except OSError as e:
            logging.warning(f"Could not set audit key permissions: {e}")
        self.audit_key = key
        logging.info("Generated new audit signing key")

    def _get_connection(self):
        """Get thread-local database connection"""
        if getattr(self._local, 'conn', None) is None:
            self._local.conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                timeout=30.0
            )
            self._local.conn.row_factory = sqlite3.Row
            # WAL mode: relays log from their own threads while requests read
            self._local.conn.execute("PRAGMA journal_mode = WAL")
        return self._local.conn

    @property
    def conn(self):
        return self._get_connection()

    def _init_db(self):
        conn = self.conn
        cursor = conn.cursor()

        try:
            if os.path.exists(self.db_path):
                os.chmod(self.db_path, 0o600)
        except OSError as e:
            logging.warning(f"Could not set database file permissions: {e}")

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                user TEXT,
                action TEXT NOT NULL,
                details TEXT,
                ip_address TEXT,
                hmac_signature TEXT
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_user ON audit_log(user)')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS server_settings (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        ''')
        conn.commit()

    def close(self):
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # ========================================
    # AUDIT LOG OPERATIONS (with HMAC Integrity)
    # ========================================

    def _generate_audit_hmac(self, timestamp: str, user: str, action: str, details: str, ip: str) -> str:
        """HMAC signature over the canonical row text"""
        data = f"{timestamp}|{user or ''}|{action}|{details or ''}|{ip or ''}"
        return hmac.new(self.audit_key, data.encode('utf-8'), hashlib.sha256).hexdigest()

    def _verify_audit_hmac(self, entry: dict) -> bool:
        stored_sig = entry.get('hmac_signature') or ''
        if not stored_sig:
            return False

        expected_sig = self._generate_audit_hmac(
            entry.get('timestamp', ''),
            entry.get('user', ''),
            entry.get('action', ''),
            entry.get('details', ''),
            entry.get('ip_address', '')
        )
        return hmac.compare_digest(stored_sig, expected_sig)

    def add_audit_entry(self, user: str, action: str, details: str = '', ip: str = ''):
        cursor = self.conn.cursor()
        timestamp = datetime.now().isoformat()
        signature = self._generate_audit_hmac(timestamp, user, action, details, ip)

        cursor.execute('''
            INSERT INTO audit_log (timestamp, user, action, details, ip_address, hmac_signature)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (timestamp, user, action, details, ip, signature))
        self.conn.commit()

    def get_audit_log(self, limit: int = 1000, user: str = None, action: str = None,
                      verify_integrity: bool = False) -> list:
        cursor = self.conn.cursor()

        query = 'SELECT * FROM audit_log'
        params = []
        conditions = []

        if user:
            conditions.append('user = ?')
            params.append(user)
        if action:
            conditions.append('action LIKE ?')
            params.append(f'%{action}%')

        if conditions:
            query += ' WHERE ' + ' AND '.join(conditions)

        query += ' ORDER BY id DESC LIMIT ?'
        params.append(limit)

        cursor.execute(query, params)
        entries = [dict(row) for row in cursor.fetchall()]

        if verify_integrity:
            for entry in entries:
                entry['integrity_verified'] = self._verify_audit_hmac(entry)

        return entries

    def verify_audit_log_integrity(self) -> dict:
        cursor = self.conn.cursor()
        cursor.execute('SELECT * FROM audit_log')

        total = verified = tampered = 0
        for row in cursor.fetchall():
            entry = dict(row)
            total += 1
            if self._verify_audit_hmac(entry):
                verified += 1
            else:
                tampered += 1
                logging.warning(f"AUDIT LOG INTEGRITY VIOLATION: Entry ID {entry.get('id')} may have been tampered!")

        return {
            'total_entries': total,
            'verified': verified,
            'potentially_tampered': tampered,
        }

    def cleanup_audit_log(self, days: int = 90) -> int:
        """Remove audit entries older than specified days"""
        cursor = self.conn.cursor()
        cutoff = (datetime.now() - timedelta(days=days)).isoformat()
        cursor.execute('DELETE FROM audit_log WHERE timestamp < ?', (cutoff,))
        deleted = cursor.rowcount
        self.conn.commit()
        return deleted

    # ========================================
    # SERVER SETTINGS
    # ========================================

    def get_server_settings(self) -> dict:
        cursor = self.conn.cursor()
        cursor.execute('SELECT key, value FROM server_settings')

        settings = {}
        for row in cursor.fetchall():
            try:
                settings[row['key']] = json.loads(row['value'])
            except (TypeError, ValueError):
                settings[row['key']] = row['value']
        return settings

    def get_server_setting(self, key: str, default=None):
        cursor = self.conn.cursor()
        cursor.execute('SELECT value FROM server_settings WHERE key = ?', (key,))
        row = cursor.fetchone()
        if not row:
            return default
        try:
            return json.loads(row['value'])
        except (TypeError, ValueError):
            return row['value']

    def save_server_setting(self, key: str, value):
        cursor = self.conn.cursor()
        cursor.execute('''
            INSERT OR REPLACE INTO server_settings (key, value)
            VALUES (?, ?)
        ''', (key, json.dumps(value)))
        self.conn.commit()

    def save_server_settings(self, settings: dict):
        for key, value in settings.items():
            self.save_server_setting(key, value)
