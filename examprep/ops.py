"""Operator commands for the sync lock and the final-refresh flag."""
import argparse, json, logging, sys
from examprep.core.config import settings
from examprep.core.database import SessionLocal, init_db
from examprep.services.sync_lock import SyncLockGuard
from examprep.services.version_store import VersionStore


def main(argv=None, session_factory=SessionLocal):
    ap = argparse.ArgumentParser(prog="examprep-sync")
    sub = ap.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="show the sync lock state")
    sub.add_parser("clear-lock", help="release a lock left by a crashed run")
    reset = sub.add_parser("reset-final", help="re-enable synchronization after the final refresh")
    reset.add_argument("--yes", action="store_true", help="confirm the reset")
    check = sub.add_parser("check-invariant", help="list questions without exactly one active version")
    check.add_argument("--question-set", dest="question_set_id", type=int, default=None)
    args = ap.parse_args(argv)

    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    if session_factory is SessionLocal:
        init_db()
    guard = SyncLockGuard(session_factory)

    if args.command == "status":
        print(json.dumps(guard.status().to_dict(), indent=2))
        return 0
    if args.command == "clear-lock":
        released = guard.force_release()
        print(json.dumps({"released": released}))
        return 0
    if args.command == "reset-final":
        if not args.yes:
            print("refusing to reset the final-refresh flag without --yes", file=sys.stderr)
            return 2
        print(json.dumps({"reset": guard.reset_finalized()}))
        return 0
    # check-invariant
    with session_factory() as db:
        broken = VersionStore(db).find_invariant_violations(args.question_set_id)
    print(json.dumps({"violations": broken}))
    return 1 if broken else 0


if __name__ == "__main__":
    sys.exit(main())
