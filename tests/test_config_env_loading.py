from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]


class ConfigEnvLoadingTests(unittest.TestCase):
    def _run(self, code: str, bot_env_file: str) -> subprocess.CompletedProcess[str]:
        env = os.environ.copy()
        env["BOT_ENV_FILE"] = bot_env_file
        return subprocess.run(
            [sys.executable, "-c", code],
            cwd=str(ROOT),
            env=env,
            capture_output=True,
            text=True,
        )

    def test_missing_bot_env_file_fails_fast(self) -> None:
        result = self._run("import config; print('ok')", "data/__definitely_missing_env_for_test__.env")
        self.assertNotEqual(result.returncode, 0)
        details = (result.stdout + "\n" + result.stderr).lower()
        self.assertIn("bot_env_file", details)
        self.assertIn("does not exist", details)

    def test_trade_keys_are_loaded_from_env_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text(
                "\n".join(
                    [
                        "FACTORY_ADDRESS=0xF9416A6098DD4ACCCA3099FC82A4824915AC6536",
                        "BUY_AMOUNT_NATIVE=0.05",
                        "SELL_DELAY_SECONDS=600",
                        "CONFIRMATIONS=2",
                        "STATE_FILE=data/bought.json",
                    ]
                )
                + "\n",
                encoding="utf-8",
            )
            result = self._run(
                (
                    "import config; "
                    "print(f\"{config.FACTORY_ADDRESS}|{config.BUY_AMOUNT_NATIVE}|"
                    "{config.SELL_DELAY_SECONDS}|{config.CONFIRMATIONS}|{config.STATE_FILE}\")"
                ),
                str(env_path),
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(
            result.stdout.strip(),
            "0xf9416a6098dd4accca3099fc82a4824915ac6536|0.05|600.0|2|data/bought.json",
        )

    def test_trade_settings_convert_buy_amount_to_wei(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text("BUY_AMOUNT_NATIVE=0.02\nSELL_RETRY_ATTEMPTS=3\n", encoding="utf-8")
            result = self._run(
                (
                    "from trading.trade_executor import TradeSettings; "
                    "s = TradeSettings.from_config(); "
                    "print(f\"{s.funding_wei}|{s.sell_retry_attempts}|{s.min_tokens_out}\")"
                ),
                str(env_path),
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "20000000000000000|3|0")


if __name__ == "__main__":
    unittest.main()
