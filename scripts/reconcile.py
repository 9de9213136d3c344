#!/usr/bin/env python3
"""
reconcile.py - Check that every child's balance equals the sum of their ledger.

Usage examples:
  python scripts/reconcile.py
  python scripts/reconcile.py --child-id 12
  python scripts/reconcile.py --parent-id 3 --json
  python scripts/reconcile.py --env-file /path/to/.env --only-mismatches

Flags:
  --env-file PATH
    Load environment variables from PATH before connecting.
  --child-id ID
    Reconcile a single child account.
  --parent-id ID
    Reconcile every child of one parent.
  --only-mismatches
    Print only accounts whose balance does not match the ledger.
  --json
    Output results as JSON.

Exit code is 0 when every checked account balances, 1 otherwise.
"""
import argparse
import json
import os
import sys
import textwrap
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from tabulate import tabulate

sys.path.append(str(Path(__file__).resolve().parents[1]))

from kidledger.db import BuildSessionFactory, BuildUserConnectionUrl, CreateLedgerEngine  # noqa: E402
from kidledger.modules.ledger.models import ChildAccount  # noqa: E402
from kidledger.modules.ledger.services.accounts_service import Reconcile, ReconciliationReport  # noqa: E402
from kidledger.modules.ledger.utils.money import FormatAmount  # noqa: E402


def ParseArgs(Argv: List[str] | None = None) -> argparse.Namespace:
    Parser = argparse.ArgumentParser(description="Reconcile child balances against the transaction ledger.")
    Parser.add_argument("--env-file", default="", help="Load environment variables from this file.")
    Scope = Parser.add_mutually_exclusive_group()
    Scope.add_argument("--child-id", type=int, help="Reconcile a single child account.")
    Scope.add_argument("--parent-id", type=int, help="Reconcile every child of one parent.")
    Parser.add_argument("--only-mismatches", action="store_true", help="Print only unbalanced accounts.")
    Parser.add_argument("--json", action="store_true", help="Output results as JSON.")
    return Parser.parse_args(Argv)


def LoadEnvFile(EnvPath: str) -> None:
    if not EnvPath:
        return
    if not os.path.exists(EnvPath):
        raise RuntimeError(f"Env file not found: {EnvPath}")
    load_dotenv(dotenv_path=EnvPath)


def SelectChildIds(Db, Args: argparse.Namespace) -> List[int]:
    if Args.child_id is not None:
        return [Args.child_id]
    Query = Db.query(ChildAccount.Id)
    if Args.parent_id is not None:
        Query = Query.filter(ChildAccount.ParentUserId == Args.parent_id)
    return [Row.Id for Row in Query.order_by(ChildAccount.Id.asc()).all()]


def ReportRows(Reports: List[ReconciliationReport]) -> List[dict]:
    return [
        {
            "ChildId": Report.ChildId,
            "Balance": FormatAmount(Report.Balance),
            "LedgerTotal": FormatAmount(Report.LedgerTotal),
            "IsBalanced": Report.IsBalanced,
        }
        for Report in Reports
    ]


def PrintReports(Rows: List[dict], AsJson: bool) -> None:
    if AsJson:
        print(json.dumps(Rows, indent=2))
        return
    if not Rows:
        print("No child accounts matched.")
        return
    Headers = ["ChildId", "Balance", "LedgerTotal", "IsBalanced"]
    print(tabulate([[Row[Key] for Key in Headers] for Row in Rows], headers=Headers, tablefmt="github"))


def Main(Argv: List[str] | None = None) -> int:
    Args = ParseArgs(Argv)
    try:
        LoadEnvFile(Args.env_file)
        Engine = CreateLedgerEngine(BuildUserConnectionUrl())
        Session = BuildSessionFactory(Engine)
        with Session() as Db:
            Reports = [Reconcile(Db, ChildId) for ChildId in SelectChildIds(Db, Args)]
    except Exception as Ex:
        print("\nError:", file=sys.stderr)
        print(textwrap.indent(str(Ex), "  "), file=sys.stderr)
        return 1

    Rows = ReportRows(Reports)
    if Args.only_mismatches:
        Rows = [Row for Row in Rows if not Row["IsBalanced"]]
    PrintReports(Rows, Args.json)
    return 0 if all(Report.IsBalanced for Report in Reports) else 1


if __name__ == "__main__":
    raise SystemExit(Main())
