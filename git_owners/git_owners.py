import argparse
import codecs
import configparser
import csv
import json
import logging
import os
import subprocess
import sys
from collections import namedtuple

from git_owners import __version__

logger = logging.getLogger(__name__)

# Read defaults from config file, path can be overridden from the environment
CONFIG_FILE = os.environ.get(
    "GIT_OWNERS_CONFIG", os.path.expanduser("~/.gitownersrc")
)

DEFAULT_COLORS = {
    "reset": "\033[0m",
    "alert": "\033[0;31m",
}

OUTPUT_FORMATS = ("text", "json", "csv")

# Prefixes each commit header in the log so it can't be mistaken for a numstat line
RECORD_MARKER = "\x1e"

CommitRecord = namedtuple("CommitRecord", ["author", "additions", "removals"])


class GitOwnersError(Exception):
    """Base class for every fatal error reported to the user."""


class InvalidRepository(GitOwnersError):
    """The target path is missing or is not the root of a git repository."""


class ExternalToolError(GitOwnersError):
    """git could not be started or exited with a non-zero status.

    returncode is None when the process never started.
    """

    def __init__(self, message, returncode=None, stderr=""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class ConfigurationError(GitOwnersError):
    """A flag or config file value is out of range."""


class ParseError(GitOwnersError):
    """git log produced a line we don't understand."""


def setup_logging(verbose=False):
    """Send progress lines to stderr so stdout only carries results."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(message)s",
        stream=sys.stderr,
        force=True,
    )


def load_config(path=None):
    """Load defaults and colors from the INI config file.

    A missing file is not an error, every value has a built-in fallback.
    """
    path = path or CONFIG_FILE
    # Color values carry escape sequences, "%" must stay literal
    config = configparser.ConfigParser(interpolation=None)
    try:
        config.read(path)
    except configparser.Error as e:
        raise ConfigurationError(f"Can't read {path}: {e}") from e

    limit = config.get("defaults", "limit", fallback=None)
    if limit is not None:
        try:
            limit = int(limit)
        except ValueError:
            raise ConfigurationError(
                f"limit in {path} must be an integer, got {limit!r}"
            )

    try:
        include_merges = config.getboolean(
            "defaults", "include_merges", fallback=False
        )
    except ValueError as e:
        raise ConfigurationError(f"include_merges in {path}: {e}")

    output = config.get("defaults", "output", fallback="text")
    if output not in OUTPUT_FORMATS:
        raise ConfigurationError(
            f"output in {path} must be one of {', '.join(OUTPUT_FORMATS)}, got {output!r}"
        )

    colors = {}
    for name, default in DEFAULT_COLORS.items():
        value = config.get("colors", name, fallback=default)
        try:
            colors[name] = codecs.decode(value, "unicode_escape")
        except UnicodeDecodeError as e:
            raise ConfigurationError(
                f"{name} color in {path} is not a valid escape sequence: {value!r}"
            ) from e

    return {
        "limit": limit,
        "branch": config.get("defaults", "branch", fallback=None),
        "include_merges": include_merges,
        "output": output,
        "colors": colors,
    }


def check_limit(limit):
    """Reject a limit that is set but not a positive integer."""
    if limit is not None and limit <= 0:
        raise ConfigurationError(f"limit must be a positive integer, got {limit}")


def format_command(cmd):
    """Join a command for messages, escaping control characters like RECORD_MARKER."""
    return " ".join(arg if arg.isprintable() else repr(arg) for arg in cmd)


def run_git(args, target_dir):
    """Run a git subcommand inside target_dir and return its stdout."""
    cmd = ["git", "-C", str(target_dir)] + list(args)
    logger.debug("Running '%s'", format_command(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise ExternalToolError(f"Failed to start git: {e}")

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        logger.warning("stderr from git: %s", stderr)
        raise ExternalToolError(
            f"Failed to run '{format_command(cmd)}' (exit code {result.returncode})",
            returncode=result.returncode,
            stderr=stderr,
        )
    return result.stdout


def check_repository(target_dir):
    """Make sure target_dir is the top level of a git work tree."""
    if not os.path.exists(target_dir):
        raise InvalidRepository(f"{target_dir} does not exist")
    if not os.path.isdir(target_dir):
        raise InvalidRepository(f"{target_dir} is not a directory")

    try:
        toplevel = run_git(["rev-parse", "--show-toplevel"], target_dir).strip()
    except ExternalToolError as e:
        if e.returncode is None:
            raise
        raise InvalidRepository(f"{target_dir} is not a git repository")

    if os.path.realpath(toplevel) != os.path.realpath(target_dir):
        raise InvalidRepository(
            f"{target_dir} is inside a git repository but is not its root ({toplevel})"
        )


def has_commits(target_dir):
    """Check whether any ref (or a detached HEAD) points at a commit."""
    if run_git(["for-each-ref", "--count=1", "--format=%(refname)"], target_dir).strip():
        return True
    try:
        run_git(["rev-parse", "--verify", "--quiet", "HEAD"], target_dir)
    except ExternalToolError as e:
        if e.returncode is None:
            raise
        return False
    return True


def build_log_command(branch=None, include_merges=False, since=None, until=None):
    """Build the git log arguments for one header line plus numstat lines per commit."""
    cmd = ["log", "--numstat", f"--format={RECORD_MARKER}%aN"]
    if not include_merges:
        cmd.append("--no-merges")
    if since:
        cmd.append(f"--since={since}")
    if until:
        cmd.append(f"--until={until}")
    cmd.append(branch if branch else "--all")
    return cmd


def _parse_count(value, lineno, line):
    # Binary files report "-" for both counts
    if value == "-":
        return 0
    if not value.isdigit():
        raise ParseError(f"Unexpected numstat line {lineno}: {line!r}")
    return int(value)


def parse_numstat_log(output):
    """Yield a CommitRecord for every commit in `git log --numstat` output."""
    author = None
    additions = removals = 0

    # splitlines() would also break on RECORD_MARKER
    for lineno, line in enumerate(output.split("\n"), 1):
        if line.startswith(RECORD_MARKER):
            if author is not None:
                yield CommitRecord(author, additions, removals)
            author = line[len(RECORD_MARKER):].strip()
            if not author:
                raise ParseError(f"Commit without an author on line {lineno}")
            additions = removals = 0
            continue

        if not line.strip():
            continue

        parts = line.split("\t", 2)
        if len(parts) != 3:
            raise ParseError(f"Unexpected log line {lineno}: {line!r}")
        if author is None:
            raise ParseError(f"File stats before any commit on line {lineno}: {line!r}")

        additions += _parse_count(parts[0], lineno, line)
        removals += _parse_count(parts[1], lineno, line)

    if author is not None:
        yield CommitRecord(author, additions, removals)


def read_commit_log(
    target_dir, branch=None, include_merges=False, since=None, until=None
):
    """Return a generator of CommitRecord for the repository at target_dir."""
    check_repository(target_dir)
    # git log fails on an unborn HEAD, so a repository without commits is checked first
    if not has_commits(target_dir):
        logger.info("No commits found in %s", target_dir)
        return iter(())

    output = run_git(
        build_log_command(
            branch=branch, include_merges=include_merges, since=since, until=until
        ),
        target_dir,
    )
    return parse_numstat_log(output)


def aggregate_authors(records):
    """Fold commit records into per-author totals, keeping first-seen order."""
    stats = {}
    for record in records:
        totals = stats.get(record.author)
        if totals is None:
            totals = stats[record.author] = {"commits": 0, "additions": 0, "removals": 0}
        totals["commits"] += 1
        totals["additions"] += record.additions
        totals["removals"] += record.removals
    return stats


def rank_authors(stats, limit=None):
    """Sort authors by commit count (ties keep first-seen order) and apply limit."""
    check_limit(limit)

    entries = [
        (author, totals["commits"], totals["additions"], totals["removals"])
        for author, totals in stats.items()
    ]
    # sorted() is stable so equal counts stay in insertion order
    entries = sorted(entries, key=lambda entry: entry[1], reverse=True)
    if limit is not None:
        entries = entries[:limit]
    return entries


def format_author_line(entry):
    """Format one ranked entry as a result line."""
    author, commits, additions, removals = entry
    return (
        f"{author} has made {commits} commits: "
        f"{additions} additions and {removals} removals"
    )


def render_text(entries, stream=None):
    """Write one result line per author."""
    if stream is None:
        stream = sys.stdout
    for entry in entries:
        stream.write(format_author_line(entry) + "\n")


def render_json(entries, stream=None):
    """Write the ranked authors as a JSON array."""
    if stream is None:
        stream = sys.stdout
    output = [
        {
            "author": author,
            "commits": commits,
            "additions": additions,
            "removals": removals,
        }
        for author, commits, additions, removals in entries
    ]
    stream.write(json.dumps(output, indent=2) + "\n")


def render_csv(entries, stream=None):
    """Write the ranked authors as CSV with a header row."""
    if stream is None:
        stream = sys.stdout
    writer = csv.writer(stream, lineterminator="\n")
    writer.writerow(["Author", "Commits", "Additions", "Removals"])
    for entry in entries:
        writer.writerow(entry)


RENDERERS = {
    "text": render_text,
    "json": render_json,
    "csv": render_csv,
}


def build_parser():
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        prog="git-owners",
        description="Per-author commit counts and line changes, to help establish ownership of a codebase",
    )
    parser.add_argument(
        "-t",
        "--target-dir",
        required=True,
        help="Root of the git repository to analyze",
    )
    parser.add_argument(
        "-n", "--limit", type=int, help="Only show the top N authors by commit count"
    )
    parser.add_argument(
        "-b",
        "--branch",
        help="Branch or ref to read commits from (default: all refs)",
    )
    parser.add_argument(
        "--include-merges",
        action="store_true",
        default=None,
        help="Count merge commits too",
    )
    parser.add_argument(
        "-s", "--since", help="Only count commits more recent than a specific date"
    )
    parser.add_argument("-u", "--until", help="Only count commits older than a specific date")
    parser.add_argument(
        "-o",
        "--output",
        choices=OUTPUT_FORMATS,
        help="Output format (default: text)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Show debug output"
    )
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def main(argv=None):
    """Run the CLI and return the process exit code."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    colors = DEFAULT_COLORS
    try:
        config = load_config()
        colors = config["colors"]

        limit = args.limit if args.limit is not None else config["limit"]
        branch = args.branch or config["branch"]
        include_merges = (
            args.include_merges
            if args.include_merges is not None
            else config["include_merges"]
        )
        render = RENDERERS[args.output or config["output"]]

        check_limit(limit)

        logger.info("Getting commit log..")
        records = read_commit_log(
            args.target_dir,
            branch=branch,
            include_merges=include_merges,
            since=args.since,
            until=args.until,
        )

        logger.info("Compiling stats..")
        stats = aggregate_authors(records)
        entries = rank_authors(stats, limit=limit)
    except GitOwnersError as e:
        print(f"{colors['alert']}Error: {e}{colors['reset']}", file=sys.stderr)
        return 1

    render(entries)
    return 0


if __name__ == "__main__":
    sys.exit(main())
