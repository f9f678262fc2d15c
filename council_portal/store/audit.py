"""
Council Store Audit Tool — reconciliation of stored vote counters and pairings.

Recomputes, for every election, the vote counters from the eligibility
ledger and reports any disagreement:
- ``total_votes == len(voters) == sum(candidate.votes)``
- every candidate's voter list matches the ledger entries for that candidate
- no voter appears in the ledger twice

It also checks that every club's ``club_admin`` and the admin account's
``assigned_club`` point at each other.

Usage:
    python -m council_portal.store.audit
    python -m council_portal.store.audit --database-url postgresql://...
    python -m council_portal.store.audit --verbose
"""

from __future__ import annotations

import argparse
import sys
import time
from dataclasses import dataclass, field

from rich.console import Console
from rich.table import Table

from council_portal.config import settings
from council_portal.domain.schema import Account, Club, Election, Role
from council_portal.governance.lifecycle import reconcile_election
from council_portal.governance.repository import Repository
from council_portal.store.base import ACCOUNTS, CLUBS, ELECTIONS, DocumentStore

console = Console()


@dataclass
class AuditReport:
    """Findings of one reconciliation pass."""

    elections_checked: int = 0
    clubs_checked: int = 0
    election_problems: dict[str, list[str]] = field(default_factory=dict)
    pairing_problems: list[str] = field(default_factory=list)
    elections: list[Election] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.election_problems and not self.pairing_problems


def reconcile(store: DocumentStore) -> AuditReport:
    """Check every election and club/admin pair in ``store``."""
    repo = Repository(store)
    report = AuditReport()

    for election in repo.all(Election, ELECTIONS):
        report.elections_checked += 1
        report.elections.append(election)
        problems = reconcile_election(election)
        if problems:
            report.election_problems[str(election.id)] = problems

    accounts = {a.id: a for a in repo.all(Account, ACCOUNTS)}
    for club in repo.all(Club, CLUBS):
        report.clubs_checked += 1
        if club.club_admin is None:
            continue
        admin = accounts.get(club.club_admin)
        if admin is None:
            report.pairing_problems.append(f"club {club.name!r} points at a missing admin account")
        elif admin.assigned_club != club.id:
            report.pairing_problems.append(
                f"club {club.name!r} names {admin.username} as admin, "
                f"but that account is assigned elsewhere"
            )
        elif admin.role != Role.CLUB_ADMIN:
            report.pairing_problems.append(
                f"club {club.name!r} admin {admin.username} has role {admin.role.value}"
            )

    clubs = {c.id: c for c in repo.all(Club, CLUBS)}
    for account in accounts.values():
        if account.assigned_club is None:
            continue
        club = clubs.get(account.assigned_club)
        if club is None:
            report.pairing_problems.append(
                f"account {account.username} is assigned to a missing club"
            )
        elif club.club_admin != account.id:
            report.pairing_problems.append(
                f"account {account.username} is assigned to club {club.name!r}, "
                f"which does not name it as admin"
            )

    return report


def run_audit(database_url: str, verbose: bool = False) -> bool:
    """
    Run a full reconciliation audit.

    Args:
        database_url: SQLAlchemy connection string.
        verbose: Print a per-election counter table if True.

    Returns:
        True if the store is consistent, False otherwise.
    """
    from council_portal.store.sql import SqlDocumentStore

    console.print("\n[bold blue]═══ Council Store Reconciliation Audit ═══[/bold blue]\n")

    store = SqlDocumentStore(database_url)
    start_time = time.time()
    report = reconcile(store)
    elapsed = time.time() - start_time
    store.close()

    console.print(f"  Elections checked: [bold]{report.elections_checked}[/bold]")
    console.print(f"  Clubs checked: [bold]{report.clubs_checked}[/bold]")
    console.print(f"  Audit time: {elapsed:.3f}s")

    if report.is_consistent:
        console.print("[bold green]✓ CONSISTENT[/bold green]")
    else:
        console.print("[bold red]✗ INCONSISTENT[/bold red]")
        for election_id, problems in report.election_problems.items():
            for problem in problems:
                console.print(f"  election {election_id[:8]}: {problem}")
        for problem in report.pairing_problems:
            console.print(f"  {problem}")

    if verbose and report.elections:
        console.print("\n[bold]Election Counters:[/bold]")
        table = Table(show_lines=True)
        table.add_column("Election", style="cyan", width=10)
        table.add_column("Title", style="green", width=30)
        table.add_column("Total", width=8)
        table.add_column("Ledger", width=8)
        table.add_column("Candidate sum", width=14)
        table.add_column("OK", width=4)

        for election in report.elections:
            table.add_row(
                str(election.id)[:8],
                election.title,
                str(election.total_votes),
                str(len(election.voters)),
                str(sum(c.votes for c in election.candidates)),
                "✗" if str(election.id) in report.election_problems else "✓",
            )
        console.print(table)

    console.print("\n[bold blue]═══ Audit Complete ═══[/bold blue]\n")
    return report.is_consistent


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Council Portal store reconciliation auditor"
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database connection string (defaults to .env settings)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show per-election counters",
    )
    args = parser.parse_args()

    db_url = args.database_url or settings.database_url_sync
    is_consistent = run_audit(db_url, verbose=args.verbose)
    sys.exit(0 if is_consistent else 1)


if __name__ == "__main__":
    main()
