import streamlit as st
import pandas as pd

from excess_deaths import (
    select_window, summarize_window, MEASURE_COLUMNS,
    STORM_STATES, STORM_CHART_START, STORM_CHART_END, STORM_HEADLINE_START, STORM_HEADLINE_END,
)
from storm_charts import observed_vs_expected_figure, anomaly_timeline_figure, window_bar_figure

ANOMALY_FILE = 'output/storm_anomalies.csv'

MEASURE_LABELS = {
    'All causes': 'all_cause',
    'Excluding COVID-19': 'non_covid',
}


@st.cache_data
def load_data(path=ANOMALY_FILE):
    """Load the anomaly table written by texas_storm_analysis.py"""
    try:
        df = pd.read_csv(path, parse_dates=['weekendingdate'])
        return df
    except FileNotFoundError as e:
        st.error(f"Could not find data file: {e}. Run texas_storm_analysis.py first.")
        return None


def format_estimate(summary):
    """Headline text for a window summary, e.g. '702 (412 to 993)'"""
    return f"{summary['excess_deaths']:,.0f} ({summary['lower']:,.0f} to {summary['upper']:,.0f})"


def main():
    st.set_page_config(
        page_title="Winter Storm Excess Deaths",
        layout="wide",
        initial_sidebar_state="expanded"
    )

    anomalies = load_data()
    if anomalies is None:
        st.stop()

    st.title("Winter Storm Excess Deaths")

    available = sorted(anomalies['jurisdiction'].unique().tolist())

    with st.sidebar:
        st.header("Jurisdictions")
        default_states = [s for s in STORM_STATES if s in available]
        selected_states = st.multiselect(
            "Select jurisdictions:",
            available,
            default=default_states,
            label_visibility="collapsed"
        )
        focus = st.selectbox("Headline jurisdiction:", available,
                             index=available.index('Texas') if 'Texas' in available else 0)

        st.header("Measure")
        measure_label = st.radio("Measure:", list(MEASURE_LABELS), label_visibility="collapsed")
        measure = MEASURE_LABELS[measure_label]

        st.header("Headline Weeks")
        headline_dates = st.date_input(
            "Week-ending dates:",
            value=(STORM_HEADLINE_START.date(), STORM_HEADLINE_END.date())
        )

        st.markdown("---")
        # The picker returns a single date until the range is complete
        if len(headline_dates) == 2:
            try:
                summary = summarize_window(anomalies, focus, *headline_dates, measure=measure)
                st.metric(f"{focus} excess deaths", format_estimate(summary))
                st.text(f"Weeks: {summary['weeks']}")
                if summary['missing_weeks']:
                    st.warning(f"{summary['missing_weeks']} weeks have no value; total is undefined.")
            except ValueError as e:
                st.warning(str(e))

        st.markdown("---")
        st.markdown("**Dataset Info**")
        st.text(f"Records: {len(anomalies):,}")
        st.text(f"Jurisdictions: {len(available)}")

    view_choice = st.radio(
        "Select View:",
        ["Storm Weeks", "Observed vs Expected", "Excess Deaths Timeline"],
        horizontal=True,
        key="view_selector"
    )

    if view_choice == "Storm Weeks":
        st.header("Weekly Excess Deaths Around the Storm")
        window = select_window(anomalies, selected_states, STORM_CHART_START, STORM_CHART_END)
        if window.empty:
            st.info("No records for the selected jurisdictions in the storm window.")
        else:
            st.plotly_chart(window_bar_figure(window, measure), use_container_width=True)
            value_col, lower_col, upper_col = MEASURE_COLUMNS[measure]
            st.dataframe(window[['jurisdiction', 'weekendingdate', 'allcause', 'fit',
                                 value_col, lower_col, upper_col]])

    elif view_choice == "Observed vs Expected":
        st.header("Observed vs. Expected Weekly Deaths")
        for jurisdiction in selected_states:
            st.plotly_chart(observed_vs_expected_figure(anomalies, jurisdiction), use_container_width=True)

    elif view_choice == "Excess Deaths Timeline":
        st.header("Excess Deaths Timeline")
        for jurisdiction in selected_states:
            st.plotly_chart(anomaly_timeline_figure(anomalies, jurisdiction, measure), use_container_width=True)
        st.info("Interpretation: the band is the weekly 95% prediction interval subtracted from observed deaths.")


if __name__ == "__main__":
    main()
