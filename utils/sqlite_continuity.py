import asyncio
import json
import sqlite3
import threading
from functools import lru_cache
from typing import Any, Dict, List, Optional
from loguru import logger

from utils.errors import PersistenceError
from utils.llm import normalize_name
from utils.models import (
    ChapterResult,
    ChapterSummary,
    CharacterState,
    ContinuityDeltas,
    ForeshadowingHint,
    PlotThread,
    PowerProgressionEvent,
)


"""
Continuity (world state) of every project, one sqlite file.

Table: t_plot_threads       key (project_id, thread_id)
- thread_id: normalized thread name.
- status: 'open' | 'resolved' | 'forgotten'. Only open -> resolved / open -> forgotten is ever written.
- characters, foreshadowing: JSON lists.

Table: t_characters         key (project_id, character_id)
- last_updated_chapter never decreases; deltas from an older chapter are ignored.

Table: t_power_events       key (project_id, chapter_number, seq)
- append-only. Replaying a chapter inserts nothing new (INSERT OR IGNORE).

Table: t_chapter_summaries  key (project_id, chapter_number)
Table: t_chapters           key (project_id, chapter_number) - accepted ChapterResult records,
                            committed in the same transaction as the chapter's continuity deltas.
Table: t_rejected_drafts    autoincrement id - rejected drafts kept for inspection, never overwritten.
"""


def make_id(name: str) -> str:
    return normalize_name(name).replace(" ", "_")



class ContinuityStore:
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
            CREATE TABLE IF NOT EXISTS t_plot_threads (
                project_id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                name TEXT,
                description TEXT,
                priority TEXT DEFAULT 'sub',
                status TEXT DEFAULT 'open',
                introduced_chapter INTEGER DEFAULT 0,
                resolved_chapter INTEGER,
                last_active_chapter INTEGER DEFAULT 0,
                characters TEXT DEFAULT '[]',
                foreshadowing TEXT DEFAULT '[]',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (project_id, thread_id)
            );
            CREATE INDEX IF NOT EXISTS idx_threads_status ON t_plot_threads (project_id, status);
            CREATE TRIGGER IF NOT EXISTS t_plot_threads_auto_update_timestamp
            AFTER UPDATE ON t_plot_threads
            FOR EACH ROW
            BEGIN
                UPDATE t_plot_threads SET updated_at = CURRENT_TIMESTAMP
                WHERE project_id = OLD.project_id AND thread_id = OLD.thread_id;
            END;

            CREATE TABLE IF NOT EXISTS t_characters (
                project_id TEXT NOT NULL,
                character_id TEXT NOT NULL,
                name TEXT,
                role TEXT DEFAULT 'minor',
                realm TEXT DEFAULT '',
                status TEXT DEFAULT 'active',
                goal TEXT DEFAULT '',
                growth_score INTEGER DEFAULT 0,
                last_updated_chapter INTEGER DEFAULT 0,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (project_id, character_id)
            );

            CREATE TABLE IF NOT EXISTS t_power_events (
                project_id TEXT NOT NULL,
                chapter_number INTEGER NOT NULL,
                seq INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                character_id TEXT NOT NULL,
                description TEXT DEFAULT '',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (project_id, chapter_number, seq)
            );

            CREATE TABLE IF NOT EXISTS t_chapter_summaries (
                project_id TEXT NOT NULL,
                chapter_number INTEGER NOT NULL,
                title TEXT,
                summary TEXT,
                key_events TEXT DEFAULT '[]',
                characters_involved TEXT DEFAULT '[]',
                cliffhanger TEXT DEFAULT '',
                word_count INTEGER DEFAULT 0,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (project_id, chapter_number)
            );

            CREATE TABLE IF NOT EXISTS t_chapters (
                project_id TEXT NOT NULL,
                chapter_number INTEGER NOT NULL,
                title TEXT,
                content TEXT,
                word_count INTEGER,
                quality_score REAL,
                result TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (project_id, chapter_number)
            );

            CREATE TABLE IF NOT EXISTS t_rejected_drafts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL,
                chapter_number INTEGER NOT NULL,
                quality_score REAL,
                result TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            CREATE INDEX IF NOT EXISTS idx_rejected_project ON t_rejected_drafts (project_id, chapter_number);
            """)
            self.conn.commit()

    ###########################################################################
    # reads

    def _select_threads(self, project_id: str, status: Optional[str] = None) -> List[PlotThread]:
        sql = "SELECT * FROM t_plot_threads WHERE project_id = ?"
        args: List[Any] = [project_id]
        if status:
            sql += " AND status = ?"
            args.append(status)
        sql += " ORDER BY introduced_chapter, thread_id"
        with self._lock:
            rows = self.conn.execute(sql, args).fetchall()
        return [_row_to_thread(row) for row in rows]

    def _select_characters(self, project_id: str) -> List[CharacterState]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM t_characters WHERE project_id = ? ORDER BY character_id",
                (project_id,)
            ).fetchall()
        return [
            CharacterState(
                character_id=row["character_id"],
                name=row["name"],
                role=row["role"],
                realm=row["realm"] or "",
                status=row["status"],
                goal=row["goal"] or "",
                growth_score=row["growth_score"] or 0,
                last_updated_chapter=row["last_updated_chapter"] or 0,
            )
            for row in rows
        ]

    def _select_power_events(self, project_id: str, since_chapter: int) -> List[PowerProgressionEvent]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT * FROM t_power_events
                WHERE project_id = ? AND chapter_number >= ?
                ORDER BY chapter_number, seq
                """,
                (project_id, since_chapter)
            ).fetchall()
        return [
            PowerProgressionEvent(
                chapter_number=row["chapter_number"],
                event_type=row["event_type"],
                character_id=row["character_id"],
                description=row["description"] or "",
            )
            for row in rows
        ]

    def _select_summaries(self, project_id: str, start: int, end: int) -> List[ChapterSummary]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT * FROM t_chapter_summaries
                WHERE project_id = ? AND chapter_number BETWEEN ? AND ?
                ORDER BY chapter_number
                """,
                (project_id, start, end)
            ).fetchall()
        return [
            ChapterSummary(
                chapter_number=row["chapter_number"],
                title=row["title"] or "",
                summary=row["summary"] or "",
                key_events=json.loads(row["key_events"] or "[]"),
                characters_involved=json.loads(row["characters_involved"] or "[]"),
                cliffhanger=row["cliffhanger"] or "",
                word_count=row["word_count"] or 0,
            )
            for row in rows
        ]

    def _select_chapter_results(self, project_id: str) -> List[ChapterResult]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT result FROM t_chapters WHERE project_id = ? ORDER BY chapter_number",
                (project_id,)
            ).fetchall()
        return [ChapterResult.model_validate_json(row["result"]) for row in rows]

    def _select_rejected(self, project_id: str) -> List[ChapterResult]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT result FROM t_rejected_drafts WHERE project_id = ? ORDER BY id",
                (project_id,)
            ).fetchall()
        return [ChapterResult.model_validate_json(row["result"]) for row in rows]

    ###########################################################################
    # writes

    def _seed_threads(self, project_id: str, threads: List[PlotThread]):
        try:
            with self._lock, self.conn:
                for thread in threads:
                    self.conn.execute(
                        """
                        INSERT OR IGNORE INTO t_plot_threads
                            (project_id, thread_id, name, description, priority, status,
                             introduced_chapter, last_active_chapter, characters, foreshadowing)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            project_id, thread.thread_id or make_id(thread.name), thread.name,
                            thread.description, thread.priority, thread.status,
                            thread.introduced_chapter, thread.last_active_chapter,
                            json.dumps(thread.characters, ensure_ascii=False),
                            json.dumps([h.model_dump() for h in thread.foreshadowing], ensure_ascii=False),
                        )
                    )
        except sqlite3.Error as e:
            raise PersistenceError(f"seeding threads for {project_id} failed: {e}") from e

    def _upsert_chapter_continuity(self, project_id: str, chapter_number: int, deltas: ContinuityDeltas):
        try:
            with self._lock, self.conn:
                self._apply_continuity(project_id, chapter_number, deltas)
        except sqlite3.Error as e:
            raise PersistenceError(f"continuity upsert for {project_id} chapter {chapter_number} failed: {e}") from e

    def _commit_accepted_chapter(self, result: ChapterResult):
        try:
            with self._lock, self.conn:
                self._apply_continuity(result.project_id, result.chapter_number, result.continuity)
                self._insert_chapter_result(result)
        except sqlite3.Error as e:
            raise PersistenceError(f"committing chapter {result.chapter_number} of {result.project_id} failed: {e}") from e

    def _apply_continuity(self, project_id: str, chapter_number: int, deltas: ContinuityDeltas):
        """Caller holds the lock and the transaction."""
        for delta in deltas.threads:
            self._apply_thread_delta(project_id, chapter_number, delta)
        for delta in deltas.characters:
            self._apply_character_delta(project_id, chapter_number, delta)
        for seq, event in enumerate(deltas.power_events):
            self.conn.execute(
                """
                INSERT OR IGNORE INTO t_power_events
                    (project_id, chapter_number, seq, event_type, character_id, description)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (project_id, chapter_number, seq, event.event_type, make_id(event.character), event.description)
            )
        if deltas.summary is not None:
            summary = deltas.summary
            self.conn.execute(
                """
                INSERT INTO t_chapter_summaries
                    (project_id, chapter_number, title, summary, key_events, characters_involved, cliffhanger, word_count)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(project_id, chapter_number) DO UPDATE SET
                    title = excluded.title,
                    summary = excluded.summary,
                    key_events = excluded.key_events,
                    characters_involved = excluded.characters_involved,
                    cliffhanger = excluded.cliffhanger,
                    word_count = excluded.word_count,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    project_id, chapter_number, summary.title, summary.summary,
                    json.dumps(summary.key_events, ensure_ascii=False),
                    json.dumps(summary.characters_involved, ensure_ascii=False),
                    summary.cliffhanger, summary.word_count,
                )
            )

    def _apply_thread_delta(self, project_id: str, chapter_number: int, delta):
        thread_id = make_id(delta.name)
        row = self.conn.execute(
            "SELECT * FROM t_plot_threads WHERE project_id = ? AND thread_id = ?",
            (project_id, thread_id)
        ).fetchone()

        if row is None:
            hints = [
                ForeshadowingHint(hint=h, planted_chapter=chapter_number, payoff_deadline=delta.payoff_deadline)
                for h in delta.foreshadowing_planted
            ]
            self.conn.execute(
                """
                INSERT INTO t_plot_threads
                    (project_id, thread_id, name, description, priority, status, introduced_chapter,
                     resolved_chapter, last_active_chapter, characters, foreshadowing)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project_id, thread_id, delta.name, delta.description, delta.priority, delta.status,
                    chapter_number, chapter_number if delta.status == "resolved" else None, chapter_number,
                    json.dumps(delta.characters, ensure_ascii=False),
                    json.dumps([h.model_dump() for h in hints], ensure_ascii=False),
                )
            )
            return

        thread = _row_to_thread(row)
        status = thread.status
        resolved_chapter = thread.resolved_chapter
        if thread.status == "open" and delta.status in ("resolved", "forgotten"):
            status = delta.status
            if delta.status == "resolved":
                resolved_chapter = chapter_number
        elif thread.status != "open" and delta.status != thread.status:
            logger.warning(f"thread '{thread.name}' is {thread.status}, ignoring status '{delta.status}' from chapter {chapter_number}")

        characters = list(thread.characters)
        for name in delta.characters:
            if name not in characters:
                characters.append(name)

        hints = list(thread.foreshadowing)
        known = {normalize_name(h.hint) for h in hints}
        for text in delta.foreshadowing_planted:
            if normalize_name(text) not in known:
                hints.append(ForeshadowingHint(hint=text, planted_chapter=chapter_number, payoff_deadline=delta.payoff_deadline))
                known.add(normalize_name(text))
        for text in delta.foreshadowing_paid_off:
            for hint in hints:
                if normalize_name(hint.hint) == normalize_name(text):
                    hint.status = "paid_off"
                    break
            else:
                hints.append(ForeshadowingHint(hint=text, planted_chapter=chapter_number, status="paid_off"))

        self.conn.execute(
            """
            UPDATE t_plot_threads SET
                description = ?, status = ?, resolved_chapter = ?, last_active_chapter = ?,
                characters = ?, foreshadowing = ?
            WHERE project_id = ? AND thread_id = ?
            """,
            (
                delta.description or thread.description, status, resolved_chapter,
                max(thread.last_active_chapter, chapter_number),
                json.dumps(characters, ensure_ascii=False),
                json.dumps([h.model_dump() for h in hints], ensure_ascii=False),
                project_id, thread_id,
            )
        )

    def _apply_character_delta(self, project_id: str, chapter_number: int, delta):
        character_id = make_id(delta.name)
        row = self.conn.execute(
            "SELECT * FROM t_characters WHERE project_id = ? AND character_id = ?",
            (project_id, character_id)
        ).fetchone()

        if row is None:
            self.conn.execute(
                """
                INSERT INTO t_characters
                    (project_id, character_id, name, role, realm, status, goal, growth_score, last_updated_chapter)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project_id, character_id, delta.name, delta.role or "minor", delta.realm or "",
                    delta.status or "active", delta.goal or "", min(100, delta.growth * 10), chapter_number,
                )
            )
            return

        if chapter_number < row["last_updated_chapter"]:
            logger.warning(f"character '{delta.name}' already updated at chapter {row['last_updated_chapter']}, ignoring delta from chapter {chapter_number}")
            return

        self.conn.execute(
            """
            UPDATE t_characters SET
                role = ?, realm = ?, status = ?, goal = ?, growth_score = ?, last_updated_chapter = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE project_id = ? AND character_id = ?
            """,
            (
                delta.role or row["role"],
                delta.realm if delta.realm is not None else row["realm"],
                delta.status or row["status"],
                delta.goal if delta.goal is not None else row["goal"],
                min(100, (row["growth_score"] or 0) + delta.growth * 10),
                chapter_number,
                project_id, character_id,
            )
        )

    def _save_chapter_result(self, result: ChapterResult):
        try:
            with self._lock, self.conn:
                self._insert_chapter_result(result)
        except sqlite3.Error as e:
            raise PersistenceError(f"saving chapter {result.chapter_number} of {result.project_id} failed: {e}") from e

    def _insert_chapter_result(self, result: ChapterResult):
        self.conn.execute(
            """
            INSERT INTO t_chapters (project_id, chapter_number, title, content, word_count, quality_score, result)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(project_id, chapter_number) DO UPDATE SET
                title = excluded.title,
                content = excluded.content,
                word_count = excluded.word_count,
                quality_score = excluded.quality_score,
                result = excluded.result
            """,
            (
                result.project_id, result.chapter_number, result.title, result.content,
                result.word_count, result.quality_score, result.model_dump_json(),
            )
        )

    def _save_rejected_draft(self, result: ChapterResult):
        try:
            with self._lock, self.conn:
                self.conn.execute(
                    "INSERT INTO t_rejected_drafts (project_id, chapter_number, quality_score, result) VALUES (?, ?, ?, ?)",
                    (result.project_id, result.chapter_number, result.quality_score, result.model_dump_json())
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"saving rejected draft {result.chapter_number} of {result.project_id} failed: {e}") from e

    ###########################################################################
    # async repository API, every call is awaited I/O

    async def get_open_threads(self, project_id: str) -> List[PlotThread]:
        return await asyncio.to_thread(self._select_threads, project_id, "open")

    async def get_all_threads(self, project_id: str) -> List[PlotThread]:
        return await asyncio.to_thread(self._select_threads, project_id)

    async def get_character_states(self, project_id: str) -> List[CharacterState]:
        return await asyncio.to_thread(self._select_characters, project_id)

    async def get_recent_power_events(self, project_id: str, since_chapter: int = 0) -> List[PowerProgressionEvent]:
        return await asyncio.to_thread(self._select_power_events, project_id, since_chapter)

    async def get_chapter_summaries(self, project_id: str, start: int, end: int) -> List[ChapterSummary]:
        return await asyncio.to_thread(self._select_summaries, project_id, start, end)

    async def get_recent_summaries(self, project_id: str, before_chapter: int, limit: int) -> List[ChapterSummary]:
        if limit <= 0 or before_chapter <= 1:
            return []
        start = max(1, before_chapter - limit)
        return await self.get_chapter_summaries(project_id, start, before_chapter - 1)

    async def seed_threads(self, project_id: str, threads: List[PlotThread]):
        await asyncio.to_thread(self._seed_threads, project_id, threads)

    async def upsert_chapter_continuity(self, project_id: str, chapter_number: int, deltas: ContinuityDeltas):
        """All of a chapter's continuity effects in one transaction."""
        await asyncio.to_thread(self._upsert_chapter_continuity, project_id, chapter_number, deltas)
        logger.info(
            f"continuity committed for chapter {chapter_number}: "
            f"{len(deltas.threads)} threads, {len(deltas.characters)} characters, {len(deltas.power_events)} power events"
        )

    async def save_chapter_result(self, result: ChapterResult):
        await asyncio.to_thread(self._save_chapter_result, result)

    async def commit_accepted_chapter(self, result: ChapterResult):
        """The chapter's continuity deltas and its ChapterResult land together or not at all."""
        await asyncio.to_thread(self._commit_accepted_chapter, result)
        deltas = result.continuity
        logger.info(
            f"chapter {result.chapter_number} committed: "
            f"{len(deltas.threads)} threads, {len(deltas.characters)} characters, {len(deltas.power_events)} power events"
        )

    async def get_chapter_results(self, project_id: str) -> List[ChapterResult]:
        return await asyncio.to_thread(self._select_chapter_results, project_id)

    async def save_rejected_draft(self, result: ChapterResult):
        await asyncio.to_thread(self._save_rejected_draft, result)

    async def get_rejected_drafts(self, project_id: str) -> List[ChapterResult]:
        return await asyncio.to_thread(self._select_rejected, project_id)

    def close(self):
        with self._lock:
            if self.conn:
                self.conn.close()



def _row_to_thread(row: sqlite3.Row) -> PlotThread:
    data: Dict[str, Any] = dict(row)
    return PlotThread(
        thread_id=data["thread_id"],
        name=data["name"] or data["thread_id"],
        description=data["description"] or "",
        priority=data["priority"] or "sub",
        status=data["status"] or "open",
        introduced_chapter=data["introduced_chapter"] or 0,
        resolved_chapter=data["resolved_chapter"],
        last_active_chapter=data["last_active_chapter"] or 0,
        characters=json.loads(data["characters"] or "[]"),
        foreshadowing=[ForeshadowingHint(**h) for h in json.loads(data["foreshadowing"] or "[]")],
    )



###############################################################################



@lru_cache(maxsize=None)
def get_continuity_store(db_path: str) -> ContinuityStore:
    import atexit
    instance = ContinuityStore(db_path=db_path)
    atexit.register(instance.close)
    return instance
