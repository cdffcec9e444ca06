"""Smoke tests for the command-line entry point."""
import json

from run_desk import main


def _run(capsys, *argv):
    code = main(list(argv))
    return code, json.loads(capsys.readouterr().out)


def test_cli_submit_and_pay(tmp_path, capsys):
    data_dir = str(tmp_path)

    code, out = _run(capsys, "--data-dir", data_dir, "submit", "--product-id", "2", "--qty", "3",
                     "--buyer-id", "u1", "--buyer-name", "Alice")
    assert code == 0
    order_id = out["data"]["id"]

    code, out = _run(capsys, "--data-dir", data_dir, "pay", order_id, "success")
    assert code == 0
    assert out["data"]["status"] == "paid"

    code, out = _run(capsys, "--data-dir", data_dir, "stock")
    airpods = next(p for p in out["data"] if p["id"] == "2")
    assert (airpods["total"], airpods["available"], airpods["deducted"]) == (197, 197, 3)


def test_cli_reports_failure_exit_code(tmp_path, capsys):
    code, out = _run(capsys, "--data-dir", str(tmp_path), "submit", "--product-id", "3", "--qty", "51",
                     "--buyer-id", "u1", "--buyer-name", "Alice")
    assert code == 1
    assert out["error"] == "insufficient_stock"
    assert out["available_stock"] == 50
