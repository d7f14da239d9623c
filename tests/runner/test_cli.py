"""Tests for the command-line runner."""

import asyncio
import struct

import pytest

from ammkit.config.settings import load_settings
from ammkit.core.types import USDC_MINT, WSOL_MINT
from ammkit.runner.cli import Engine, build_parser, run

SOL = 10**9
TOKEN = 10**6


@pytest.fixture
def config(tmp_path, ledger):
    path = tmp_path / "engine.yaml"
    path.write_text(
        "devnet:\n"
        "  rpc_url: http://127.0.0.1:8899\n"
        f"  pool_program_id: {ledger.program_id}\n"
        "  log_level: ERROR\n"
        "  retry_attempts: 1\n"
    )
    return str(path)


def output_lines(capsys) -> list[str]:
    return [line for line in capsys.readouterr().out.splitlines() if line.strip()]


class TestParser:
    """Test argument parsing."""

    def test_price_command(self):
        args = build_parser().parse_args(["price", "Mint1", "--secure"])

        assert args.command == "price"
        assert args.mint == "Mint1"
        assert args.secure
        assert args.profile == "devnet"

    def test_quote_command(self):
        args = build_parser().parse_args(
            ["--profile", "mainnet", "quote", "A", "B", "1000", "--slippage-bps", "50"]
        )

        assert (args.input_mint, args.output_mint, args.amount) == ("A", "B", 1000)
        assert args.slippage_bps == 50
        assert args.profile == "mainnet"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_unknown_timeframe_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["watch", "Mint1", "--timeframe", "2m"])


class TestEngine:
    """Test component assembly."""

    def test_components(self, ledger, config):
        engine = Engine(load_settings("devnet", config), gateway=ledger)

        for name in ("gateway", "registry", "history", "aggregator", "quotes", "executor", "bus", "tokens"):
            assert engine[name] is not None
        assert engine["gateway"] is ledger
        assert engine["aggregator"].history is engine["history"]
        assert engine["executor"].history is engine["history"]
        assert engine["tokens"].metadata_service is None


class TestCommands:
    """Test commands against an in-memory ledger."""

    @pytest.mark.asyncio
    async def test_price(self, ledger, config, sol_pool, token_mint, capsys):
        sol_pool(token_mint, 1_000_000 * TOKEN, 1_000 * SOL)

        code = await run(["--config", config, "price", token_mint], gateway=ledger)

        assert code == 0
        (line,) = [l for l in output_lines(capsys) if l.startswith(token_mint)]
        assert "0.001000000 SOL" in line
        assert "pools=1" in line

    @pytest.mark.asyncio
    async def test_secure_price(self, ledger, config, sol_pool, usd_pool, token_mint, capsys):
        usd_pool(150.0)
        sol_pool(token_mint, 1_000_000 * TOKEN, 1_000 * SOL)
        sol_pool(token_mint, 500_000 * TOKEN, 500 * SOL)

        code = await run(["--config", config, "price", token_mint, "--secure"], gateway=ledger)

        assert code == 0
        (line,) = [l for l in output_lines(capsys) if l.startswith(token_mint)]
        assert "$0.150000" in line
        assert "pools=2" in line

    @pytest.mark.asyncio
    async def test_pools(self, ledger, config, sol_pool, token_mint, capsys):
        pools = [sol_pool(token_mint, 1_000 * TOKEN, 1 * SOL) for _ in range(2)]

        code = await run(["--config", config, "pools", token_mint], gateway=ledger)

        assert code == 0
        lines = output_lines(capsys)
        assert sorted(p.address for p in pools) == [l for l in lines if l in {p.address for p in pools}]

    @pytest.mark.asyncio
    async def test_pools_warns_on_truncated_scan(
        self, ledger, tmp_path, sol_pool, make_pool, token_mint, capsys
    ):
        path = tmp_path / "capped.yaml"
        path.write_text(
            "devnet:\n"
            "  rpc_url: http://127.0.0.1:8899\n"
            f"  pool_program_id: {ledger.program_id}\n"
            "  log_level: ERROR\n"
            "  max_scan_accounts: 1\n"
        )
        for _ in range(2):
            sol_pool(token_mint, 1_000 * TOKEN, 1 * SOL)
        ledger.put_pool(make_pool(token_b=token_mint))

        code = await run(["--config", str(path), "pools", token_mint], gateway=ledger)

        assert code == 0
        assert "scan truncated" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_quote(self, ledger, config, make_pool, capsys):
        pool = make_pool(token_a=USDC_MINT, token_b=WSOL_MINT, reserve_a=1_000_000, reserve_b=10_000)
        ledger.put_pool(pool)

        code = await run(
            ["--config", config, "quote", USDC_MINT, WSOL_MINT, "1000000"], gateway=ledger
        )

        assert code == 0
        (line,) = [l for l in output_lines(capsys) if l.startswith("pool=")]
        assert f"pool={pool.address}" in line
        assert "out=4992" in line
        assert "min_out=4942" in line

    @pytest.mark.asyncio
    async def test_token(self, ledger, config, token_mint, capsys):
        data = bytearray(82)
        struct.pack_into("<Q", data, 36, 42_000_000)
        data[44] = 6
        ledger.put_account(token_mint, bytes(data), owner="TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")

        code = await run(["--config", config, "token", token_mint], gateway=ledger)

        assert code == 0
        (line,) = [l for l in output_lines(capsys) if l.startswith(token_mint)]
        assert "decimals=6 supply=42000000" in line

    @pytest.mark.asyncio
    async def test_engine_error_exit_code(self, ledger, config, token_mint):
        code = await run(["--config", config, "price", token_mint], gateway=ledger)

        assert code == 1

    @pytest.mark.asyncio
    async def test_watch(self, ledger, config, sol_pool, token_mint, capsys):
        pool = sol_pool(token_mint, 1_000_000 * TOKEN, 1_000 * SOL)

        task = asyncio.create_task(
            run(
                ["--config", config, "watch", token_mint, "--count", "1", "--timeframe", "1m"],
                gateway=ledger,
            )
        )
        for _ in range(400):
            if ledger.subscriber_count(pool.address):
                break
            await asyncio.sleep(0.005)
        ledger.notify_pool(pool.model_copy(update={"token_b_reserve_amount": 2_000 * SOL}))

        code = await asyncio.wait_for(task, timeout=2.0)

        assert code == 0
        lines = output_lines(capsys)
        assert any("0.002000000 SOL" in l for l in lines)
        assert any("c=0.002000000" in l for l in lines)
        assert ledger.subscriber_count() == 0
