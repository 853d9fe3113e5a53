import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Sequence

logger = logging.getLogger(__name__)

PROJECT_COLUMNS = (
    "id, title, slug, description, technologies, category, "
    "github_url, live_url, featured"
)


class PortfolioStore:
    """SQLite-backed portfolio data (owner profile and projects)."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)

    def _get_conn(self) -> sqlite3.Connection:
        """Create a new SQLite connection."""
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_schema(self, seed: bool = True) -> None:
        """Create tables if needed and insert sample data when empty."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_conn()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS profile (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  full_name TEXT NOT NULL,
                  title TEXT NOT NULL,
                  email TEXT NOT NULL UNIQUE,
                  location TEXT NULL,
                  availability TEXT NOT NULL DEFAULT 'available',
                  hourly_rate REAL NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS projects (
                  id TEXT PRIMARY KEY,
                  title TEXT NOT NULL,
                  slug TEXT NOT NULL UNIQUE,
                  description TEXT NOT NULL,
                  long_description TEXT NULL,
                  technologies TEXT NOT NULL DEFAULT '[]',
                  category TEXT NOT NULL,
                  github_url TEXT NULL,
                  live_url TEXT NULL,
                  featured INTEGER NOT NULL DEFAULT 0,
                  start_date TEXT NULL,
                  end_date TEXT NULL,
                  github_stars INTEGER NULL,
                  github_forks INTEGER NULL,
                  sort_order INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            if seed:
                cur.execute("SELECT COUNT(*) AS c FROM profile")
                row = cur.fetchone()
                if (row[0] if row else 0) == 0:
                    _insert_sample_data(cur)
                    logger.info("Seeded portfolio database at %s", self._db_path)
            conn.commit()
        finally:
            cur.close()
            conn.close()

    def get_profile(self) -> Dict[str, Any] | None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT full_name, title, availability, hourly_rate FROM profile ORDER BY id LIMIT 1"
            )
            row = cur.fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def search_projects(
        self,
        query: str | None = None,
        technologies: Sequence[str] | None = None,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        """Projects matching the text query OR any of the technologies (case-insensitive).

        With neither filter, all projects are returned. Featured projects come
        first, then display order.
        """
        clauses: List[str] = []
        params: List[Any] = []
        if query:
            like = f"%{query.lower()}%"
            clauses.append(
                "LOWER(title) LIKE ? OR LOWER(description) LIKE ? "
                "OR LOWER(COALESCE(long_description, '')) LIKE ?"
            )
            params.extend([like, like, like])
        techs = [t.lower() for t in technologies or [] if t]
        if techs:
            placeholders = ", ".join("?" for _ in techs)
            clauses.append(
                "EXISTS (SELECT 1 FROM json_each(projects.technologies) "
                f"WHERE LOWER(json_each.value) IN ({placeholders}))"
            )
            params.extend(techs)

        where = f"WHERE {' OR '.join(f'({c})' for c in clauses)}" if clauses else ""
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                f"""
                SELECT {PROJECT_COLUMNS} FROM projects
                {where}
                ORDER BY featured DESC, sort_order ASC
                LIMIT ?
                """,
                (*params, limit),
            )
            return [_project_row(r) for r in cur.fetchall()]
        finally:
            conn.close()

    def get_project(self, id_or_slug: str) -> Dict[str, Any] | None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT * FROM projects WHERE id = ? OR slug = ? LIMIT 1",
                (id_or_slug, id_or_slug),
            )
            row = cur.fetchone()
            return _project_row(row) if row else None
        finally:
            conn.close()


def _project_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data["technologies"] = json.loads(data.get("technologies") or "[]")
    data["featured"] = bool(data.get("featured"))
    return data


def _insert_sample_data(cur: sqlite3.Cursor) -> None:
    """Insert the owner profile and a couple of showcase projects."""
    cur.execute(
        """
        INSERT INTO profile (full_name, title, email, location, availability, hourly_rate)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            "Rodrigo Vasconcelos de Barros",
            "Senior Software Engineer",
            "rodrigo@example.com",
            "Toronto, Ontario, Canada",
            "limited",
            120.0,
        ),
    )

    projects = [
        (
            "proj_ecommerce",
            "E-commerce Platform",
            "ecommerce-platform",
            "A full-stack e-commerce platform with payment integration",
            "A comprehensive e-commerce solution built with React and Node.js. Features "
            "include user authentication, product catalog, shopping cart, payment "
            "processing with Stripe, order management, and admin dashboard.",
            json.dumps(["React", "Node.js", "PostgreSQL", "Stripe", "TypeScript", "Express"]),
            "web",
            "https://github.com/rodrigopk/ecommerce-platform",
            "https://ecommerce-demo.example.com",
            1,
            "2023-01-15",
            "2023-06-30",
            156,
            28,
            1,
        ),
        (
            "proj_taskflow",
            "Task Management Mobile App",
            "task-management-mobile",
            "Cross-platform mobile app for team task management",
            "A React Native mobile application for team collaboration and task "
            "management. Features include real-time synchronization, push "
            "notifications, offline support and file attachments.",
            json.dumps(["React Native", "Firebase", "TypeScript", "Redux", "Expo"]),
            "mobile",
            "https://github.com/rodrigopk/task-manager-mobile",
            "https://apps.apple.com/app/taskflow-pro",
            1,
            "2023-03-01",
            "2023-08-15",
            89,
            15,
            2,
        ),
        (
            "proj_rails_api",
            "Rails Billing API",
            "rails-billing-api",
            "Subscription billing API for a SaaS product",
            "A Ruby on Rails JSON API handling subscriptions, invoicing and dunning, "
            "with background jobs on Sidekiq and webhooks for payment providers.",
            json.dumps(["Ruby", "Rails", "PostgreSQL", "Sidekiq", "Redis"]),
            "api",
            "https://github.com/rodrigopk/rails-billing-api",
            None,
            0,
            "2022-02-01",
            "2022-09-30",
            42,
            7,
            3,
        ),
    ]
    cur.executemany(
        """
        INSERT INTO projects
          (id, title, slug, description, long_description, technologies, category,
           github_url, live_url, featured, start_date, end_date, github_stars,
           github_forks, sort_order)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        projects,
    )
