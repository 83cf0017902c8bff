import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from functools import lru_cache
from typing import List, Optional

from utils.errors import PersistenceError
from utils.models import MilestoneValidation, ValidationDetails


"""
Table: t_milestone_validations
Append-only history of milestone checks. A later run at the same milestone adds rows; nothing is updated or deleted.

- id: INTEGER (PRIMARY KEY AUTOINCREMENT) - also the ordering of the history.
- project_id, milestone_chapter, validation_type, status: identify one check.
- score: REAL 0-100.
- details: TEXT - ValidationDetails JSON (issues, strengths, metrics).
- recommendations: TEXT - JSON list.
"""


class MilestoneDB:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.cursor = self.conn.cursor()
        self._lock = threading.Lock()
        self._create_table()

    def _create_table(self):
        with self._lock:
            self.cursor.execute("""
            CREATE TABLE IF NOT EXISTS t_milestone_validations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL,
                milestone_chapter INTEGER NOT NULL,
                validation_type TEXT NOT NULL,
                status TEXT NOT NULL,
                score REAL,
                details TEXT,
                recommendations TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """)
            self.cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_milestone_project ON t_milestone_validations (project_id, milestone_chapter)
            """)
            self.conn.commit()

    def _insert_all(self, validations: List[MilestoneValidation]) -> List[int]:
        ids = []
        try:
            with self._lock, self.conn:
                for v in validations:
                    self.cursor.execute(
                        """
                        INSERT INTO t_milestone_validations
                            (project_id, milestone_chapter, validation_type, status, score, details, recommendations, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            v.project_id, v.milestone_chapter, v.validation_type, v.status, v.details.score,
                            v.details.model_dump_json(), json.dumps(v.recommendations, ensure_ascii=False),
                            (v.created_at or datetime.now()).isoformat(),
                        )
                    )
                    ids.append(self.cursor.lastrowid)
        except sqlite3.Error as e:
            raise PersistenceError(f"saving milestone validations failed: {e}") from e
        return ids

    def _select(self, project_id: str, milestone_chapter: Optional[int] = None) -> List[MilestoneValidation]:
        sql = "SELECT * FROM t_milestone_validations WHERE project_id = ?"
        args: list = [project_id]
        if milestone_chapter is not None:
            sql += " AND milestone_chapter = ?"
            args.append(milestone_chapter)
        sql += " ORDER BY milestone_chapter, id"
        with self._lock:
            rows = self.conn.execute(sql, args).fetchall()
        return [
            MilestoneValidation(
                id=row["id"],
                project_id=row["project_id"],
                milestone_chapter=row["milestone_chapter"],
                validation_type=row["validation_type"],
                status=row["status"],
                details=ValidationDetails.model_validate_json(row["details"]),
                recommendations=json.loads(row["recommendations"] or "[]"),
                created_at=datetime.fromisoformat(row["created_at"]) if row["created_at"] else None,
            )
            for row in rows
        ]

    async def add_validations(self, validations: List[MilestoneValidation]) -> List[int]:
        return await asyncio.to_thread(self._insert_all, validations)

    async def get_validations(self, project_id: str, milestone_chapter: Optional[int] = None) -> List[MilestoneValidation]:
        return await asyncio.to_thread(self._select, project_id, milestone_chapter)

    def close(self):
        with self._lock:
            if self.conn:
                self.conn.close()



@lru_cache(maxsize=None)
def get_milestone_db(db_path: str) -> MilestoneDB:
    import atexit
    instance = MilestoneDB(db_path=db_path)
    atexit.register(instance.close)
    return instance
