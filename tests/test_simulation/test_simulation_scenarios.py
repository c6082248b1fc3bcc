"""Smoke tests: every simulation scenario runs to completion on both backends."""

from __future__ import annotations

import pytest

import simulation


class TestSimulation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("use_sqlite", [False, True])
    async def test_all_scenarios(self, use_sqlite, capsys) -> None:
        await simulation.run(sorted(simulation.SCENARIOS), use_sqlite=use_sqlite)

        out = capsys.readouterr().out
        assert "ALL SCENARIOS COMPLETED SUCCESSFULLY" in out
        assert "paid_out" in out
        assert "cancelled" in out
