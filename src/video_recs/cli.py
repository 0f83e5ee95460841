import argparse
import atexit
import json
import logging
import sqlite3
import sys
from datetime import datetime

from tqdm import tqdm

from .database import init_db, get_db, close_pool, add_user, add_video, record_like, get_stats
from .config import (
    EngineConfig,
    SERVER_HOST,
    SERVER_PORT,
    IMPORT_CHUNK_SIZE,
    EXPORT_CHUNK_SIZE,
)
from .engine import RecommendationEngine, RecommendationRequest
from .exceptions import RecommendationError
from .store import SQLiteRecommendationStore
from .utils import parse_languages

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)


def _parse_timestamp(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def cmd_init_db(args: argparse.Namespace) -> None:
    """Create the database schema."""
    init_db()
    logger.info("Database initialized")


def cmd_import(args: argparse.Namespace) -> None:
    """
    Import users, videos and likes from a JSON file.

    Expected shape:
        {"users": ["u1", ...] or [{"id": "u1"}, ...],
         "videos": [{"id": 1, "language": "en", "category": "music", "title": "..."}],
         "likes": [{"user_id": "u1", "video_id": 1, "timestamp": "2024-05-01T10:00:00"}]}

    Likes also rebuild the liking users' language/category affinities. Likes
    naming a user or video that does not exist are skipped with a warning.
    """
    with open(args.file, 'r') as f:
        data = json.load(f)

    init_db()

    users = [u['id'] if isinstance(u, dict) else u for u in data.get('users', [])]
    videos = data.get('videos', [])
    likes = data.get('likes', [])

    with get_db():
        new_users = sum(add_user(user_id) for user_id in users)
        for video in videos:
            add_video(
                int(video['id']),
                language=video.get('language'),
                category=video.get('category'),
                title=video.get('title'),
            )
    logger.info(f"Imported {new_users} new users and {len(videos)} videos")

    new_likes = 0
    skipped = 0
    with tqdm(total=len(likes), desc="Importing likes", disable=not likes) as progress:
        for i in range(0, len(likes), IMPORT_CHUNK_SIZE):
            chunk = likes[i:i + IMPORT_CHUNK_SIZE]
            with get_db():
                for like in chunk:
                    try:
                        new_likes += record_like(
                            like['user_id'],
                            int(like['video_id']),
                            _parse_timestamp(like.get('timestamp')),
                        )
                    except (ValueError, sqlite3.IntegrityError) as e:
                        skipped += 1
                        logger.warning(f"Skipping like of video {like['video_id']} by {like['user_id']}: {e}")
            progress.update(len(chunk))

    logger.info(
        f"Imported {new_likes} new likes "
        f"({len(likes) - new_likes - skipped} duplicates, {skipped} invalid skipped)"
    )


def cmd_export(args: argparse.Namespace) -> None:
    """Export users, videos and likes to a JSON file cmd_import can read."""
    def _stream_rows(conn, query: str):
        cursor = conn.execute(query)
        while True:
            chunk = cursor.fetchmany(EXPORT_CHUNK_SIZE)
            if not chunk:
                break
            for row in chunk:
                yield dict(row)

    queries = {
        "users": "SELECT id FROM users ORDER BY id",
        "videos": """
            SELECT v.id, v.title, vm.language, vm.category
            FROM videos v LEFT JOIN video_metadata vm ON vm.video_id = v.id
            ORDER BY v.id
        """,
        "likes": "SELECT user_id, video_id, timestamp FROM video_likes ORDER BY timestamp",
    }

    counts = {}
    with get_db(read_only=True) as conn, open(args.file, 'w') as f:
        f.write('{')
        for n, (key, query) in enumerate(queries.items()):
            if n:
                f.write(',')
            f.write(f'"{key}":[')
            counts[key] = 0
            for row in _stream_rows(conn, query):
                if counts[key]:
                    f.write(',')
                json.dump(row, f)
                counts[key] += 1
            f.write(']')
        f.write(', "exported_at": "%s"}' % datetime.now().isoformat())

    logger.info(
        f"Exported {counts['users']} users, {counts['videos']} videos "
        f"and {counts['likes']} likes to {args.file}"
    )


def cmd_recommend(args: argparse.Namespace) -> None:
    """Run the recommendation cascade once against the local database."""
    engine = RecommendationEngine(SQLiteRecommendationStore(), EngineConfig.from_env())
    request = RecommendationRequest(
        user_id=args.user,
        page=args.page,
        languages=parse_languages(args.languages),
        size=args.size,
    )
    ids = engine.get_recommendations(request)

    if args.format == 'json':
        print(json.dumps(ids))
        return

    if not ids:
        logger.info("No videos found")
        return
    logger.info(f"\n{len(ids)} recommended videos:")
    for video_id in ids:
        logger.info(f"  {video_id}")


def cmd_stats(args: argparse.Namespace) -> None:
    """Show database statistics."""
    stats = get_stats()
    logger.info("\nDatabase Statistics:")
    logger.info(f"  Users: {stats['users']}")
    logger.info(f"  Videos: {stats['videos']}")
    logger.info(f"  Likes: {stats['video_likes']}")
    if stats['top_languages']:
        logger.info("\nMost liked languages:")
        for language, likes in stats['top_languages']:
            logger.info(f"  {language}: {likes} likes")


def cmd_serve(args: argparse.Namespace) -> None:
    """Serve the HTTP API with uvicorn."""
    import uvicorn
    from .api import create_app

    uvicorn.run(create_app(), host=args.host, port=args.port, log_level="info")


def main():
    parser = argparse.ArgumentParser(description="Video Recommendations")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create the database schema")
    init_parser.set_defaults(func=cmd_init_db)

    import_parser = subparsers.add_parser("import", help="Import users, videos and likes from JSON")
    import_parser.add_argument("file", help="Input JSON file path")
    import_parser.set_defaults(func=cmd_import)

    export_parser = subparsers.add_parser("export", help="Export database to JSON")
    export_parser.add_argument("file", help="Output JSON file path")
    export_parser.set_defaults(func=cmd_export)

    rec_parser = subparsers.add_parser("recommend", help="Get recommendations")
    rec_parser.add_argument("--user", help="User id (omit for anonymous requests)")
    rec_parser.add_argument("--page", type=int, default=0, help="Page applied to every tier (default: 0)")
    rec_parser.add_argument("--languages", required=True,
                            help="Comma separated languages, highest priority first (e.g. 'ru,en')")
    rec_parser.add_argument("--size", type=int, required=True, help="Number of videos")
    rec_parser.add_argument("--format", choices=['text', 'json'], default='text', help="Output format")
    rec_parser.set_defaults(func=cmd_recommend)

    stats_parser = subparsers.add_parser("stats", help="Show database statistics")
    stats_parser.set_defaults(func=cmd_stats)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=SERVER_HOST, help=f"Bind address (default: {SERVER_HOST})")
    serve_parser.add_argument("--port", type=int, default=SERVER_PORT, help=f"Port (default: {SERVER_PORT})")
    serve_parser.set_defaults(func=cmd_serve)

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args.func(args)
    except (RecommendationError, sqlite3.Error, ValueError) as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
