"""
Report Generator

Turns ExecutionReports (and compiled Schedules) into text, JSON and CSV.

Usage:
    from npusim.reporting import ReportGenerator

    generator = ReportGenerator()
    print(generator.generate_text_report(result.report, schedule))
    generator.save_report(result.report, 'run.json')
    generator.save_report(result.report, 'layers.csv')
"""

import json
from pathlib import Path
from typing import Optional, Union

import pandas as pd

from npusim.core.structures import Schedule
from npusim.execution.results import ExecutionReport


class ReportGenerator:
    def __init__(self, width: int = 79):
        self.width = width

    def generate_text_report(self, report: ExecutionReport,
                             schedule: Optional[Schedule] = None) -> str:
        w = self.width
        lines = []
        lines.append("=" * w)
        lines.append("NPU EXECUTION REPORT")
        lines.append("=" * w)
        lines.append("")

        if schedule is not None:
            summary = schedule.summary()
            lines.append(f"Model id:                {summary['model_id']}")
            lines.append(f"Schedule:                {summary['num_steps']} steps, "
                         f"{summary['num_tiles']} tiles, ~{summary['estimated_cycles']} cycles estimated")
            lines.append("")

        lines.append("SUMMARY")
        lines.append("-" * w)
        lines.append(f"Total cycles:            {report.total_cycles}")
        lines.append(f"Latency:                 {report.latency_s * 1e6:.2f} us "
                     f"@ {report.clock_hz / 1e6:.0f} MHz ({report.power_mode})")
        lines.append(f"Energy:                  {report.estimated_energy_pj / 1e3:.2f} nJ")
        lines.append(f"MACs:                    {report.total_macs} "
                     f"({report.effective_macs} effective, {report.sparsity_ratio * 100:.1f}% skipped)")
        lines.append(f"Throughput:              {report.effective_tops:.4f} TOPS, "
                     f"{report.tops_per_watt:.2f} TOPS/W")
        lines.append(f"Stalls:                  {len(report.stall_events)} events, "
                     f"{report.stall_cycles} cycles")
        if report.backoff_events:
            lines.append(f"Clock back-offs:         {report.backoff_events} "
                         f"(final scale {report.clock_scale:.3f})")
        lines.append("")

        lines.append("LAYERS")
        lines.append("-" * w)
        lines.append(f"{'id':>3}  {'name':<20} {'op':<10} {'tiles':>5} {'cycles':>9} "
                     f"{'stall':>7} {'energy pJ':>12}")
        for layer in report.layers:
            lines.append(
                f"{layer.layer_id:>3}  {layer.name[:20]:<20} {layer.op_kind:<10} {layer.tiles:>5} "
                f"{layer.cycles:>9} {layer.stall_cycles:>7} {layer.energy_pj:>12.1f}"
            )
        lines.append("")

        lines.append("ENERGY BREAKDOWN")
        lines.append("-" * w)
        total = report.estimated_energy_pj or 1.0
        for name, pj in report.energy_breakdown.items():
            lines.append(f"{name:<24} {pj:>12.1f} pJ  ({pj / total * 100:5.1f}%)")

        cache = report.memory_stats.get('inference')
        if cache:
            lines.append("")
            lines.append("MEMORY")
            lines.append("-" * w)
            lines.append(f"Weight cache:            {cache['cache_hits']} hits, "
                         f"{cache['cache_misses']} misses, {cache['cache_evictions']} evictions")
            lines.append(f"Flash traffic:           {cache['flash_bytes']} bytes")

        if report.stall_events:
            lines.append("")
            lines.append("STALL TRACE")
            lines.append("-" * w)
            for event in report.stall_events:
                lines.append(f"cycle {event.cycle:>8}: {event.duration:>6} cycles "
                             f"{event.reason} tile={event.tile_key}")

        lines.append("=" * w)
        return "\n".join(lines)

    def to_dataframe(self, report: ExecutionReport) -> pd.DataFrame:
        """One row per layer."""
        return pd.DataFrame([layer.to_dict() for layer in report.layers])

    def stalls_dataframe(self, report: ExecutionReport) -> pd.DataFrame:
        columns = ['cycle', 'duration', 'reason', 'layer_id', 'tile_key']
        return pd.DataFrame([e.to_dict() for e in report.stall_events], columns=columns)

    def save_report(self, report: ExecutionReport, path: Union[str, Path]):
        """Format chosen by suffix: .json, .csv (per-layer), anything else text."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.suffix == '.json':
            with open(path, 'w') as f:
                json.dump(report.to_dict(), f, indent=2)
        elif path.suffix == '.csv':
            self.to_dataframe(report).to_csv(path, index=False)
        else:
            path.write_text(self.generate_text_report(report))
