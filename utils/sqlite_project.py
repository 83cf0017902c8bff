import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from functools import lru_cache
from typing import List, Optional
from loguru import logger

from utils.errors import PersistenceError
from utils.models import ArcOutline, Checkpoint, Project, StoryOutline


"""
Table: t_projects
One row per novel.

- project_id: TEXT (PRIMARY KEY)
- title, genre, premise, protagonist: TEXT
- target_chapters, chapters_per_arc: INTEGER
- current_chapter: INTEGER - cursor, advanced by exactly one per accepted chapter (compare-and-set).
- skipped_chapters: TEXT - JSON list of rejected chapter numbers left as gaps.
- status: TEXT - 'active', 'paused', 'completed', 'error'.
- story_outline: TEXT - StoryOutline JSON, written once by the planner.

Table: t_arcs         key (project_id, arc_number) - ArcOutline JSON.
Table: t_checkpoints  key (project_id) - latest autosave checkpoint.
"""


class ProjectDB:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.cursor = self.conn.cursor()
        self._lock = threading.Lock()
        self._create_table()

    def _create_table(self):
        with self._lock:
            self.cursor.executescript("""
            CREATE TABLE IF NOT EXISTS t_projects (
                project_id TEXT PRIMARY KEY,
                title TEXT,
                genre TEXT,
                premise TEXT,
                protagonist TEXT,
                target_chapters INTEGER,
                chapters_per_arc INTEGER,
                current_chapter INTEGER DEFAULT 0,
                skipped_chapters TEXT DEFAULT '[]',
                status TEXT DEFAULT 'active',
                story_outline TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            CREATE TRIGGER IF NOT EXISTS t_projects_auto_update_timestamp
            AFTER UPDATE ON t_projects
            FOR EACH ROW
            BEGIN
                UPDATE t_projects SET updated_at = CURRENT_TIMESTAMP WHERE project_id = OLD.project_id;
            END;

            CREATE TABLE IF NOT EXISTS t_arcs (
                project_id TEXT NOT NULL,
                arc_number INTEGER NOT NULL,
                outline TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (project_id, arc_number)
            );

            CREATE TABLE IF NOT EXISTS t_checkpoints (
                project_id TEXT PRIMARY KEY,
                current_chapter INTEGER,
                chapters_written INTEGER,
                chapters_failed INTEGER,
                total_words INTEGER,
                saved_at TIMESTAMP
            );
            """)
            self.conn.commit()

    def _write(self, sql: str, args: tuple, what: str) -> int:
        try:
            with self._lock:
                self.cursor.execute(sql, args)
                self.conn.commit()
                return self.cursor.rowcount
        except sqlite3.Error as e:
            raise PersistenceError(f"{what} failed: {e}") from e

    def add_project(self, project: Project) -> str:
        """Creates the project or refreshes its descriptive fields. Cursor and status are left alone."""
        self._write(
            """
            INSERT INTO t_projects (project_id, title, genre, premise, protagonist, target_chapters,
                                    chapters_per_arc, current_chapter, skipped_chapters, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(project_id) DO UPDATE SET
                title = excluded.title,
                genre = excluded.genre,
                premise = excluded.premise,
                protagonist = excluded.protagonist,
                target_chapters = excluded.target_chapters,
                chapters_per_arc = excluded.chapters_per_arc
            """,
            (
                project.project_id, project.title, project.genre, project.premise, project.protagonist,
                project.target_chapters, project.chapters_per_arc, project.current_chapter,
                json.dumps(project.skipped_chapters), project.status,
            ),
            f"add project {project.project_id}",
        )
        return project.project_id

    def get_project(self, project_id: str) -> Optional[Project]:
        with self._lock:
            self.cursor.execute("SELECT * FROM t_projects WHERE project_id = ?", (project_id,))
            row = self.cursor.fetchone()
        if not row:
            return None
        return Project(
            project_id=row["project_id"],
            title=row["title"] or "",
            genre=row["genre"] or "",
            premise=row["premise"] or "",
            protagonist=row["protagonist"] or "",
            target_chapters=row["target_chapters"],
            chapters_per_arc=row["chapters_per_arc"],
            current_chapter=row["current_chapter"] or 0,
            skipped_chapters=json.loads(row["skipped_chapters"] or "[]"),
            status=row["status"] or "active",
        )

    def advance_cursor(self, project_id: str, expected: int) -> int:
        """Moves current_chapter from `expected` to `expected + 1`. Anything else is a lost update."""
        changed = self._write(
            "UPDATE t_projects SET current_chapter = current_chapter + 1 WHERE project_id = ? AND current_chapter = ?",
            (project_id, expected),
            f"advance cursor of {project_id}",
        )
        if changed != 1:
            raise PersistenceError(f"cursor of {project_id} is no longer {expected}")
        return expected + 1

    def add_skipped_chapter(self, project_id: str, chapter_number: int):
        project = self.get_project(project_id)
        if project is None:
            raise PersistenceError(f"project {project_id} not found")
        skipped = sorted(set(project.skipped_chapters) | {chapter_number})
        self._write(
            "UPDATE t_projects SET skipped_chapters = ? WHERE project_id = ?",
            (json.dumps(skipped), project_id),
            f"record gap {chapter_number} of {project_id}",
        )

    def update_status(self, project_id: str, status: str):
        self._write(
            "UPDATE t_projects SET status = ? WHERE project_id = ?",
            (status, project_id),
            f"update status of {project_id}",
        )

    def save_story_outline(self, project_id: str, outline: StoryOutline):
        self._write(
            "UPDATE t_projects SET story_outline = ? WHERE project_id = ?",
            (outline.model_dump_json(), project_id),
            f"save story outline of {project_id}",
        )

    def get_story_outline(self, project_id: str) -> Optional[StoryOutline]:
        with self._lock:
            self.cursor.execute("SELECT story_outline FROM t_projects WHERE project_id = ?", (project_id,))
            row = self.cursor.fetchone()
        if not row or not row["story_outline"]:
            return None
        return StoryOutline.model_validate_json(row["story_outline"])

    def save_arc(self, project_id: str, arc: ArcOutline):
        self._write(
            """
            INSERT INTO t_arcs (project_id, arc_number, outline) VALUES (?, ?, ?)
            ON CONFLICT(project_id, arc_number) DO UPDATE SET outline = excluded.outline
            """,
            (project_id, arc.arc_number, arc.model_dump_json()),
            f"save arc {arc.arc_number} of {project_id}",
        )

    def get_arcs(self, project_id: str) -> List[ArcOutline]:
        with self._lock:
            self.cursor.execute(
                "SELECT outline FROM t_arcs WHERE project_id = ? ORDER BY arc_number",
                (project_id,)
            )
            rows = self.cursor.fetchall()
        return [ArcOutline.model_validate_json(row["outline"]) for row in rows]

    def save_checkpoint(self, checkpoint: Checkpoint):
        saved_at = checkpoint.saved_at or datetime.now()
        self._write(
            """
            INSERT INTO t_checkpoints (project_id, current_chapter, chapters_written, chapters_failed, total_words, saved_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(project_id) DO UPDATE SET
                current_chapter = excluded.current_chapter,
                chapters_written = excluded.chapters_written,
                chapters_failed = excluded.chapters_failed,
                total_words = excluded.total_words,
                saved_at = excluded.saved_at
            """,
            (
                checkpoint.project_id, checkpoint.current_chapter, checkpoint.chapters_written,
                checkpoint.chapters_failed, checkpoint.total_words, saved_at.isoformat(),
            ),
            f"save checkpoint of {checkpoint.project_id}",
        )
        logger.info(f"checkpoint saved: {checkpoint.project_id} at chapter {checkpoint.current_chapter}")

    def get_checkpoint(self, project_id: str) -> Optional[Checkpoint]:
        with self._lock:
            self.cursor.execute("SELECT * FROM t_checkpoints WHERE project_id = ?", (project_id,))
            row = self.cursor.fetchone()
        if not row:
            return None
        return Checkpoint(
            project_id=row["project_id"],
            current_chapter=row["current_chapter"],
            chapters_written=row["chapters_written"] or 0,
            chapters_failed=row["chapters_failed"] or 0,
            total_words=row["total_words"] or 0,
            saved_at=datetime.fromisoformat(row["saved_at"]) if row["saved_at"] else None,
        )

    def get_all_projects(self) -> List[Project]:
        with self._lock:
            self.cursor.execute("SELECT project_id FROM t_projects ORDER BY updated_at DESC")
            ids = [row["project_id"] for row in self.cursor.fetchall()]
        return [p for p in (self.get_project(i) for i in ids) if p]

    def close(self):
        with self._lock:
            if self.conn:
                self.conn.close()

    ###########################################################################
    # awaited variants used on the run path

    async def aadvance_cursor(self, project_id: str, expected: int) -> int:
        return await asyncio.to_thread(self.advance_cursor, project_id, expected)

    async def aadd_skipped_chapter(self, project_id: str, chapter_number: int):
        await asyncio.to_thread(self.add_skipped_chapter, project_id, chapter_number)

    async def asave_checkpoint(self, checkpoint: Checkpoint):
        await asyncio.to_thread(self.save_checkpoint, checkpoint)



###############################################################################



@lru_cache(maxsize=None)
def get_project_db(db_path: str) -> ProjectDB:
    import atexit
    instance = ProjectDB(db_path=db_path)
    atexit.register(instance.close)
    return instance
