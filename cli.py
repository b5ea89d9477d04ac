import argparse
import os
import shutil

from db import Database, SetRepository, UserRepository
from logging_utils import get_logger
from seed_sample_data import seed

logger = get_logger(__name__)


def export_sets(db_path: str, email: str, fmt: str, output_dir: str = ".") -> str:
    """Write every set of the user with ``email`` and return the file path."""
    user = UserRepository(db_path).fetch_by_email(email)
    if user is None:
        raise SystemExit(f"No user with email {email}")
    sets = SetRepository(db_path)
    if fmt == "csv":
        data = sets.export_csv(user["id"])
    else:
        data = sets.export_json(user["id"])
    out_path = os.path.join(output_dir, f"sets_{user['id']}.{fmt}")
    with open(out_path, "w", encoding="utf-8") as f:
        f.write(data)
    logger.info("Exported sets of user %s to %s", user["id"], out_path)
    return out_path


def backup_db(db_path: str, backup_path: str) -> None:
    Database(db_path).vacuum()
    shutil.copy(db_path, backup_path)


def restore_db(backup_path: str, db_path: str) -> None:
    if not os.path.exists(backup_path):
        raise SystemExit(f"Backup {backup_path} does not exist")
    shutil.copy(backup_path, db_path)


def serve(host: str, port: int, reload: bool = False) -> None:
    import uvicorn

    uvicorn.run(
        "rest_api:create_app", host=host, port=port, reload=reload, factory=True
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="RepTrack utility commands")
    sub = parser.add_subparsers(dest="cmd", required=True)

    srv = sub.add_parser("serve")
    srv.add_argument("--host", default="127.0.0.1")
    srv.add_argument("--port", type=int, default=8000)
    srv.add_argument("--reload", action="store_true")

    sd = sub.add_parser("seed")
    sd.add_argument("--db", default=None)
    sd.add_argument("--yaml", default="settings.yaml")
    sd.add_argument("--days", type=int, default=14)

    exp = sub.add_parser("export")
    exp.add_argument("--db", default="reptrack.db")
    exp.add_argument("--email", default="test@example.com")
    exp.add_argument("--fmt", choices=["csv", "json"], default="csv")
    exp.add_argument("--out", default=".")

    bkp = sub.add_parser("backup")
    bkp.add_argument("--db", default="reptrack.db")
    bkp.add_argument("--out", default="backup.db")

    rst = sub.add_parser("restore")
    rst.add_argument("--in", dest="src", default="backup.db")
    rst.add_argument("--db", default="reptrack.db")

    args = parser.parse_args()

    if args.cmd == "serve":
        serve(args.host, args.port, args.reload)
    elif args.cmd == "seed":
        seed(args.db, args.yaml, args.days)
    elif args.cmd == "export":
        print(export_sets(args.db, args.email, args.fmt, args.out))
    elif args.cmd == "backup":
        backup_db(args.db, args.out)
    elif args.cmd == "restore":
        restore_db(args.src, args.db)


if __name__ == "__main__":
    main()
