"""
rally show - Show the saved state and history of a rally.
"""

from rally.lib.history import format_files
from rally.lib.transcript import load_session, read_history, session_dir_for


def cmd_show(args) -> int:
    """Print session.json and the per-round history for a PR."""
    session_dir = session_dir_for(args.repo, args.pr)
    session = load_session(session_dir)
    if session is None:
        print(f"ERROR: No saved rally for {args.repo}#{args.pr}")
        return 1

    print(f"Rally: {session.repo}#{session.pr_number}")
    print("=" * 60)
    print(f"State:      {session.state}")
    print(f"Round:      {session.round}")
    print(f"Started:    {session.started_at}")
    print(f"Updated:    {session.updated_at}")
    if session.message:
        print(f"Message:    {session.message}")
    if session.granted_tools:
        print(f"Granted:    {', '.join(session.granted_tools)}")
    print()

    for entry in read_history(session_dir):
        data = entry.data
        if entry.kind == "review":
            print(f"[{entry.round:03d}] review: {data.get('action', '?')}")
            print(f"      {data.get('summary', '')}")
            if args.verbose:
                for c in data.get("comments", []):
                    print(f"      - [{c.get('severity')}] {c.get('path')}:{c.get('line')}: {c.get('body')}")
        else:
            print(f"[{entry.round:03d}] fix:    {data.get('status', '?')}")
            print(f"      {data.get('summary', '')}")
            print(f"      Files modified: {format_files(data.get('files_modified', []))}")
    return 0
