import pandas as pd
import logging
import os
import time
from pathlib import Path

from weekly_mortality_loader import load_weekly_deaths, flag_provisional_weeks
from expected_deaths import estimate_expected_deaths
from excess_deaths import (
    compute_anomalies, select_window, summarize_window,
    STORM_STATES, STORM_CHART_START, STORM_CHART_END, STORM_HEADLINE_START, STORM_HEADLINE_END,
)
from cause_reshaper import reshape_causes
from storm_charts import (
    observed_vs_expected_figure, anomaly_timeline_figure, window_bar_figure,
    cause_comparison_figure, save_figure,
)

# Set up logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

ANOMALY_FILENAME = 'storm_anomalies.csv'


class StormExcessDeathsAnalysis:
    """
    Estimates excess deaths during the February 2021 Texas winter storm.

    Steps:
    1. Load CDC weekly deaths by jurisdiction and cause
    2. Fit expected deaths per jurisdiction on 2015-2019 and predict every week
    3. Compute excess deaths with and without COVID-19
    4. Save the excess deaths table
    5. Summarize the storm weeks for Texas and its neighbors
    6. Render charts
    """

    def __init__(self, input_file: str = 'data/weekly_deaths_by_cause.csv', output_dir: str = 'output'):
        self.input_file = input_file
        self.output_dir = Path(output_dir)

        self.settings = {
            'storm_states': STORM_STATES,
            'focus_jurisdiction': 'Texas',
            'chart_window': (STORM_CHART_START, STORM_CHART_END),
            'headline_window': (STORM_HEADLINE_START, STORM_HEADLINE_END),
            'provisional_lag_weeks': 8,
            'isolate_failures': False,
            'chart_format': 'html',
        }

    def chart_path(self, name: str) -> Path:
        return self.output_dir / 'charts' / f"{name}.{self.settings['chart_format']}"

    def estimate(self) -> dict:
        """Load, fit and compute the anomaly table."""
        print("Step 1: Loading weekly mortality data...")
        weekly = load_weekly_deaths(self.input_file)
        weekly = flag_provisional_weeks(weekly, lag_weeks=self.settings['provisional_lag_weeks'])
        print(f"✓ Loaded {len(weekly):,} records for {weekly['jurisdiction'].nunique()} jurisdictions")

        print("\nStep 2: Fitting expected deaths per jurisdiction...")
        expected, failures = estimate_expected_deaths(weekly, isolate_failures=self.settings['isolate_failures'])
        print(f"✓ Fitted {expected['jurisdiction'].nunique()} jurisdictions")
        for failure in failures:
            print(f"⚠ {failure['jurisdiction']}: {failure['error']}")

        print("\nStep 3: Computing excess deaths...")
        anomalies = compute_anomalies(expected)

        return {
            'weekly': weekly,
            'anomalies': anomalies,
            'failures': failures,
        }

    def headline_estimates(self, anomalies: pd.DataFrame) -> dict:
        """Window totals for the focus jurisdiction, empty when its headline weeks are absent."""
        headline_start, headline_end = self.settings['headline_window']
        focus = self.settings['focus_jurisdiction']

        if focus not in set(anomalies['jurisdiction']):
            logger.warning(f"{focus} not in fitted jurisdictions, no headline estimate")
            return {}
        if select_window(anomalies, [focus], headline_start, headline_end).empty:
            logger.warning(f"No {focus} weeks between {headline_start:%Y-%m-%d} and "
                           f"{headline_end:%Y-%m-%d}, no headline estimate")
            return {}

        return {
            measure: summarize_window(anomalies, focus, headline_start, headline_end, measure=measure)
            for measure in ('all_cause', 'non_covid')
        }

    def summarize(self, results: dict) -> dict:
        """Storm windows, headline totals and the per-cause table."""
        print("\nStep 5: Summarizing storm weeks...")
        chart_start, chart_end = self.settings['chart_window']
        results['storm_window'] = select_window(results['anomalies'], self.settings['storm_states'],
                                                chart_start, chart_end)
        results['headlines'] = self.headline_estimates(results['anomalies'])
        results['causes'] = reshape_causes(results['weekly'])
        return results

    def compute(self) -> dict:
        """Run every computation stage and return the resulting tables."""
        return self.summarize(self.estimate())

    def save_anomalies(self, anomalies: pd.DataFrame) -> Path:
        """Write the anomaly table with ISO dates."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / ANOMALY_FILENAME
        out = anomalies.copy()
        out['weekendingdate'] = out['weekendingdate'].dt.strftime('%Y-%m-%d')
        out.to_csv(path, index=False)
        logger.info(f"Saved {len(out):,} anomaly records to {path}")
        return path

    def render_charts(self, results: dict) -> list:
        """Write every chart; a failure stops rendering but leaves saved data alone."""
        anomalies = results['anomalies']
        chart_paths = []

        for jurisdiction in self.settings['storm_states']:
            if jurisdiction not in set(anomalies['jurisdiction']):
                logger.warning(f"No fitted data for {jurisdiction}, skipping its charts")
                continue
            slug = jurisdiction.lower().replace(' ', '_')
            chart_paths.append(save_figure(observed_vs_expected_figure(anomalies, jurisdiction),
                                           self.chart_path(f'{slug}_observed_vs_expected')))
            chart_paths.append(save_figure(anomaly_timeline_figure(anomalies, jurisdiction),
                                           self.chart_path(f'{slug}_excess_deaths')))

        if not results['storm_window'].empty:
            for measure in ('all_cause', 'non_covid'):
                chart_paths.append(save_figure(window_bar_figure(results['storm_window'], measure),
                                               self.chart_path(f'storm_window_{measure}')))

        focus = self.settings['focus_jurisdiction']
        causes = results['causes']
        if focus in set(causes['jurisdiction']):
            current_year = self.settings['headline_window'][0].year
            chart_paths.append(save_figure(cause_comparison_figure(causes, focus, current_year),
                                           self.chart_path(f"{focus.lower().replace(' ', '_')}_causes")))

        return chart_paths

    def print_summary(self, results: dict):
        print("\n" + "=" * 70)
        print("STORM EXCESS DEATHS SUMMARY")
        print("=" * 70)
        for measure, summary in results['headlines'].items():
            print(f"{summary['jurisdiction']} ({measure.replace('_', ' ')}), "
                  f"{summary['start']:%Y-%m-%d} to {summary['end']:%Y-%m-%d} ({summary['weeks']} weeks):")
            print(f"   • Estimated excess deaths: {summary['excess_deaths']:,.0f}")
            print(f"   • Range: {summary['lower']:,.0f} to {summary['upper']:,.0f}")
            if summary['missing_weeks']:
                print(f"   ⚠ {summary['missing_weeks']} weeks without a value, total undefined")
        if not results['headlines']:
            print(f"⚠ No headline estimate for {self.settings['focus_jurisdiction']}")

        if results['failures']:
            print(f"\nJurisdictions without a model: "
                  f"{', '.join(f['jurisdiction'] for f in results['failures'])}")

        print("\nData notes:")
        print("   • Range sums weekly interval bounds; it is not a formal interval for the total")
        print("   • Most recent weeks are provisional and subject to revision")

    def run_analysis(self) -> dict:
        """Main method: estimate, save the anomaly table, summarize, then render charts."""
        print("TEXAS WINTER STORM EXCESS DEATHS ANALYSIS")
        print("=" * 70)

        results = self.estimate()

        print("\nStep 4: Saving excess deaths table...")
        results['anomaly_path'] = self.save_anomalies(results['anomalies'])

        results = self.summarize(results)

        print("\nStep 6: Rendering charts...")
        results['chart_paths'] = self.render_charts(results)
        print(f"✓ Wrote {len(results['chart_paths'])} charts to {self.output_dir / 'charts'}")

        self.print_summary(results)
        return results


def main():
    """Run the storm excess deaths analysis."""
    # Reporting weeks are calendar weeks; keep all date handling in UTC
    os.environ['TZ'] = 'UTC'
    if hasattr(time, 'tzset'):
        time.tzset()

    try:
        analysis = StormExcessDeathsAnalysis()
        analysis.run_analysis()

    except KeyboardInterrupt:
        print("\n\nProcess interrupted by user.")
    except Exception as e:
        print(f"\n\nAn error occurred: {e}")
        logger.exception("Full error details:")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
