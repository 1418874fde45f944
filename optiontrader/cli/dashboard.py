"""CLI dashboard — prints engine status and daily reports to the console."""


def print_status(status: dict) -> str:
    """Format and print the engine status.

    Args:
        status: Dict returned by ``TradingEngine.status()``.

    Returns:
        The formatted string (also printed to stdout).
    """
    halted = status.get("halted", False)
    reason = status.get("halt_reason")
    daily_pnl = status.get("daily_pnl", 0.0)
    positions = status.get("open_positions", [])

    halt_str = f"HALTED ({reason})" if halted else "active"

    lines = [
        "──────────────── optiontrader Status ────────────────",
        f"  Trading:         {halt_str}",
        f"  Trading Date:    {status.get('trading_date', 'N/A')}",
        f"  Daily P&L:       {daily_pnl:,.2f}",
        f"  Instruments:     {status.get('instruments', 0)}",
        f"  Open Positions:  {len(positions)}",
    ]
    for p in positions:
        ltp = p.get("ltp")
        ltp_str = f"{ltp:.2f}" if ltp is not None else "N/A"
        lines.append(
            f"    {p['symbol']} x{p['quantity']} @ {p['entry_price']:.2f} "
            f"LTP {ltp_str} SL {p['stop_loss']:.2f} TP {p['take_profit']:.2f} "
            f"uPnL {p['unrealized_pnl']:,.2f}"
        )
    lines.append("─────────────────────────────────────────────────────")
    output = "\n".join(lines)
    print(output)
    return output


def print_report(report: dict) -> str:
    """Format and print a daily report from ``reporting.stats.daily_report``."""
    pf = report.get("profit_factor")
    lines = [
        f"──────────────── Daily Report {report.get('date', '')} ────────────────",
        f"  Trades:          {report['total_trades']}",
        f"  Winners/Losers:  {report['winning_trades']}/{report['losing_trades']}",
        f"  Win Rate:        {report['win_rate'] * 100:.1f}%",
        f"  Profit Factor:   {pf if pf is not None else 'N/A'}",
        f"  Max Drawdown:    {report['max_drawdown']:,.2f}",
        f"  Net P&L:         {report['net_pnl']:,.2f}",
        "─────────────────────────────────────────────────────",
    ]
    output = "\n".join(lines)
    print(output)
    return output
