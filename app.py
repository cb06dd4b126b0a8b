"""
Household PV + Battery Investment Simulator
===========================================
Streamlit dashboard for the household PV + battery financial model.
Collects the system, usage and tariff inputs, runs the 50-year simulation
from pv_battery_fm and presents the ledger, KPIs and charts.

Technology: Python 3 + Streamlit
Analysis: 50-year horizon, nominal yen, user-set discount rate
Scope: rooftop PV (kW) + optional home battery (kWh)
"""

import logging

import streamlit as st
import pandas as pd
import numpy as np
import matplotlib.pyplot as plt
from typing import Dict, List, Tuple

from pv_battery_fm import (
    DEFAULT_PARAMETERS,
    IRR_NOT_RECOVERED,
    PARAMETER_CONFIG,
    SCENARIO_PRESETS,
    SENSITIVITY_PARAMETERS,
    InputParameters,
    ParameterValidationError,
    SimulationResult,
    YearlyRecord,
    build_preset_scenarios,
    check_parameter_ranges,
    compare_scenarios,
    estimate_annual_consumption,
    run_sensitivity_analysis,
    run_simulation,
)

logger = logging.getLogger(__name__)

MAN_YEN = 10000  # display unit: 10,000 yen

# ============================================================
# 1. DISPLAY HELPERS
# ============================================================

def to_man_yen(value: float) -> float:
    return value / MAN_YEN


def format_man_yen(value: float) -> str:
    """Format a yen amount in 10,000-yen blocks, e.g. 6100000 -> '610.0万円'."""
    return f"{to_man_yen(value):,.1f}万円"


def is_recovered(result: SimulationResult) -> bool:
    """True once any ledger year reaches a non-negative cumulative cashflow."""
    return any(cumulative >= 0 for cumulative in result.cumulative_cashflows)


def format_payback(result: SimulationResult) -> str:
    horizon = len(result.yearly_data)
    if not is_recovered(result):
        return f"Not recovered within {horizon} years"
    return f"{result.payback_period:.1f} years"


def format_irr(result: SimulationResult) -> str:
    if result.irr == IRR_NOT_RECOVERED:
        return "N/A (not recovered)"
    return f"{result.irr:.1f}%"


def annual_breakdown(record: YearlyRecord) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Income and expense items of one ledger year, in 10,000-yen blocks.

    Expense items that are zero for the year (e.g. no replacement) are
    left out.

    Returns:
        Tuple of (income DataFrame, expense DataFrame), columns Item / Amount
    """
    income = pd.DataFrame([
        {'Item': 'Feed-in revenue', 'Amount': to_man_yen(record.feed_in_revenue)},
        {'Item': 'Self-consumption savings', 'Amount': to_man_yen(record.savings_from_self_consumption)},
        {'Item': 'Demand response', 'Amount': to_man_yen(record.dr_revenue)},
    ], columns=['Item', 'Amount'])

    replacement_label = 'Replacement'
    if record.replacement_item:
        replacement_label = f"Replacement ({record.replacement_item})"
    expense_items = [
        ('Grid purchase', record.grid_purchase_cost),
        ('Maintenance', record.maintenance_cost),
        ('Insurance', record.insurance_cost),
        (replacement_label, record.replacement_cost),
    ]
    expenses = pd.DataFrame(
        [{'Item': item, 'Amount': to_man_yen(amount)} for item, amount in expense_items if amount > 0],
        columns=['Item', 'Amount'],
    )
    return income, expenses


def energy_flow_frame(result: SimulationResult) -> pd.DataFrame:
    """Per-year energy streams (kWh) for the energy-flow chart."""
    return pd.DataFrame({
        'Year': [r.year for r in result.yearly_data],
        'Generation': [r.generation for r in result.yearly_data],
        'Self-Consumed': [r.self_consumed for r in result.yearly_data],
        'Feed-In': [r.feed_in for r in result.yearly_data],
        'Grid Purchase': [r.grid_purchase for r in result.yearly_data],
    })


def ledger_display_frame(result: SimulationResult, show_all: bool = False) -> pd.DataFrame:
    """
    Formatted ledger for the detail table.

    Shows the first 10 years unless ``show_all`` is set. Money columns are
    in 10,000-yen blocks, energy columns in whole kWh.
    """
    ledger = result.to_dataframe()
    if not show_all:
        ledger = ledger.head(10)

    display = pd.DataFrame({'Year': ledger['Year']})
    for col in ['Generation_kWh', 'Self_Consumed_kWh', 'Feed_In_kWh', 'Grid_Purchase_kWh']:
        display[col] = ledger[col].apply(lambda x: f"{x:,.0f}")
    display['Electricity_Price'] = ledger['Electricity_Price'].apply(lambda x: f"{x:.1f}")
    for col in ['Feed_In_Revenue', 'Self_Consumption_Savings', 'DR_Revenue', 'Grid_Purchase_Cost',
                'Maintenance', 'Insurance', 'Replacement_Cost', 'Annual_Cashflow',
                'Cumulative_Cashflow', 'NPV']:
        display[col] = ledger[col].apply(lambda x: f"{to_man_yen(x):,.1f}")
    display['Replacement_Item'] = ledger['Replacement_Item'].replace('', '-')
    return display


def format_scenario_table(scenario_df: pd.DataFrame) -> pd.DataFrame:
    display = scenario_df.copy()
    for col in ['Net Initial Cost', 'Total Cashflow', 'NPV']:
        display[col] = display[col].apply(format_man_yen)
    display['Payback (years)'] = display['Payback (years)'].apply(lambda x: f"{x:.1f}")
    display['IRR (%)'] = display['IRR (%)'].apply(lambda x: f"{x:.2f}%")
    return display


# ============================================================
# 2. CHARTS
# ============================================================

def plot_cashflow_and_npv(result: SimulationResult):
    years = [r.year for r in result.yearly_data]
    cumulative = np.array(result.cumulative_cashflows) / MAN_YEN
    npv = np.array([r.npv for r in result.yearly_data]) / MAN_YEN

    fig, ax = plt.subplots(figsize=(12, 6))
    ax.plot(years, cumulative, marker='o', markersize=3, label='Cumulative Cashflow',
            linewidth=2, color='#1976D2')
    ax.plot(years, npv, marker='s', markersize=3, label='NPV', linewidth=2, color='#388E3C')
    ax.axhline(y=0, color='black', linestyle='--', alpha=0.5)
    if is_recovered(result):
        ax.axvline(x=result.payback_period, color='#FF9800', linestyle=':', linewidth=2,
                   label=f'Payback ({result.payback_period:.1f} years)')
    ax.set_xlabel('Year')
    ax.set_ylabel('10,000 yen')
    ax.set_title('Cumulative Cashflow and NPV')
    ax.legend()
    ax.grid(alpha=0.3)
    plt.tight_layout()
    return fig


def plot_annual_breakdown(income: pd.DataFrame, expenses: pd.DataFrame, year: int):
    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(14, 5))

    ax1.bar(income['Item'], income['Amount'], color='#4CAF50', alpha=0.8)
    ax1.set_ylabel('10,000 yen')
    ax1.set_title(f'Income, Year {year}')
    ax1.grid(axis='y', alpha=0.3)

    if len(expenses) > 0:
        ax2.bar(expenses['Item'], expenses['Amount'], color='#F44336', alpha=0.8)
    ax2.set_ylabel('10,000 yen')
    ax2.set_title(f'Expenses, Year {year}')
    ax2.grid(axis='y', alpha=0.3)

    for ax in (ax1, ax2):
        ax.tick_params(axis='x', labelrotation=20)
    plt.tight_layout()
    return fig


def plot_energy_flow(energy_df: pd.DataFrame):
    fig, ax = plt.subplots(figsize=(12, 6))
    ax.plot(energy_df['Year'], energy_df['Generation'], linewidth=2, color='#FF9800', label='Generation')
    ax.stackplot(
        energy_df['Year'],
        energy_df['Self-Consumed'],
        energy_df['Feed-In'],
        labels=['Self-Consumed', 'Feed-In'],
        colors=['#4CAF50', '#2196F3'],
        alpha=0.6,
    )
    ax.plot(energy_df['Year'], energy_df['Grid Purchase'], linewidth=2, linestyle='--',
            color='#F44336', label='Grid Purchase')
    ax.set_xlabel('Year')
    ax.set_ylabel('kWh/year')
    ax.set_title('Annual Energy Flow')
    ax.legend()
    ax.grid(alpha=0.3)
    plt.tight_layout()
    return fig


def plot_tornado(sens_df: pd.DataFrame, parameter: str):
    fig, ax = plt.subplots(figsize=(10, 6))
    base_irr = sens_df.loc[sens_df['Variation_Value'] == 0, 'IRR (%)'].values[0]
    irr_delta = sens_df['IRR (%)'] - base_irr

    colors = ['red' if x < 0 else 'green' for x in irr_delta]
    ax.barh(sens_df['Variation'], irr_delta, color=colors, alpha=0.7)
    ax.axvline(x=0, color='black', linestyle='-', linewidth=1)
    ax.set_xlabel('Change in IRR (percentage points)')
    ax.set_ylabel(f'{parameter} Variation')
    ax.set_title(f'Sensitivity of IRR to {parameter}')
    ax.grid(axis='x', alpha=0.3)
    plt.tight_layout()
    return fig


# ============================================================
# 3. INPUT FORM
# ============================================================

def parameter_slider(name: str, value: float) -> float:
    """Sidebar slider whose label, range and step come from PARAMETER_CONFIG."""
    config = PARAMETER_CONFIG[name]
    return st.slider(
        f"{config['label']} ({config['unit']})",
        min_value=float(config['min']),
        max_value=float(config['max']),
        value=float(value),
        step=float(config['step']),
        help=config['description'],
    )


def collect_inputs() -> Dict:
    """Render the sidebar and return the raw InputParameters keyword arguments."""
    defaults = DEFAULT_PARAMETERS
    inputs = {}

    st.header(" System Configuration")

    st.subheader("1. Equipment")
    inputs['solar_capacity_kw'] = parameter_slider('solar_capacity_kw', defaults.solar_capacity_kw)
    inputs['battery_capacity_kwh'] = parameter_slider('battery_capacity_kwh', defaults.battery_capacity_kwh)

    st.markdown("---")

    st.subheader("2. Electricity Usage")
    inputs['self_consumption_rate_pct'] = parameter_slider(
        'self_consumption_rate_pct', defaults.self_consumption_rate_pct)
    use_estimate = st.checkbox(
        "Estimate consumption from panel size",
        value=False,
        help="kW x self-consumption rate x 24 h x 365 days",
    )
    if use_estimate:
        inputs['annual_consumption_kwh'] = estimate_annual_consumption(
            inputs['solar_capacity_kw'], inputs['self_consumption_rate_pct'])
        st.caption(f"Estimated consumption: {inputs['annual_consumption_kwh']:,} kWh/year")
    else:
        inputs['annual_consumption_kwh'] = parameter_slider(
            'annual_consumption_kwh', defaults.annual_consumption_kwh)

    st.markdown("---")

    st.subheader("3. Tariffs")
    with st.expander("Electricity Price", expanded=True):
        inputs['electricity_base_price'] = parameter_slider(
            'electricity_base_price', defaults.electricity_base_price)
        inputs['electricity_price_increase_rate_pct'] = parameter_slider(
            'electricity_price_increase_rate_pct', defaults.electricity_price_increase_rate_pct)

    with st.expander("Feed-in Tariff", expanded=False):
        inputs['enable_feed_in_tariff'] = st.checkbox(
            "Sell surplus under FIT", value=defaults.enable_feed_in_tariff)
        inputs['feed_in_tariff_rate'] = parameter_slider('feed_in_tariff_rate', defaults.feed_in_tariff_rate)

    st.markdown("---")

    st.subheader("4. Subsidies & Finance")
    with st.expander("Subsidies (10,000 yen)", expanded=False):
        inputs['subsidy_national'] = parameter_slider('subsidy_national', defaults.subsidy_national)
        inputs['subsidy_local'] = parameter_slider('subsidy_local', defaults.subsidy_local)

    inputs['discount_rate_pct'] = parameter_slider('discount_rate_pct', defaults.discount_rate_pct)

    return inputs


# ============================================================
# 4. STREAMLIT APP
# ============================================================

def main():
    """Main Streamlit application"""

    st.set_page_config(
        page_title="Household PV + Battery Investment Simulator",
        page_icon="",
        layout="wide",
        initial_sidebar_state="expanded"
    )

    st.title(" Household PV + Battery Investment Simulator")
    st.markdown("**50-year cashflow, payback, NPV and IRR** | Rooftop PV + Home Battery")

    st.markdown("---")

    with st.sidebar:
        raw_inputs = collect_inputs()

    try:
        params = InputParameters(**raw_inputs)
    except ParameterValidationError as exc:
        logger.warning("Rejected inputs: %s", exc)
        st.error("Invalid inputs:\n\n" + "\n".join(f"- {msg}" for msg in exc.errors))
        st.stop()

    for message in check_parameter_ranges(params):
        st.warning(message)

    result = run_simulation(params)
    horizon = len(result.yearly_data)
    logger.info("Simulated %.1f kW / %.1f kWh: payback %.1f years, IRR %.2f%%",
                params.solar_capacity_kw, params.battery_capacity_kwh,
                result.payback_period, result.irr)

    # ============================================================
    # Key metrics
    # ============================================================

    st.header(" Key Performance Indicators")

    col1, col2, col3, col4, col5 = st.columns(5)

    with col1:
        st.metric("Net Initial Cost", format_man_yen(result.initial_cost),
                  help=f"Before subsidies: {format_man_yen(result.gross_initial_cost)}")
    with col2:
        st.metric("Payback Period", format_payback(result))
    with col3:
        st.metric(f"{horizon}-Year Cumulative Cashflow", format_man_yen(result.total_cashflow))
    with col4:
        st.metric("NPV", format_man_yen(result.npv))
    with col5:
        st.metric("IRR", format_irr(result))

    st.markdown("---")

    # ============================================================
    # Charts and ledger
    # ============================================================

    st.header(" Simulation Results")

    tab1, tab2, tab3, tab4 = st.tabs(["Cashflow & NPV", "Annual Breakdown", "Energy Flow", "Yearly Detail"])

    with tab1:
        st.pyplot(plot_cashflow_and_npv(result))

    with tab2:
        selected_year = st.slider("Year", min_value=1, max_value=horizon, value=1)
        record = result.yearly_data[selected_year - 1]
        income, expenses = annual_breakdown(record)

        inc_col, exp_col, net_col = st.columns(3)
        with inc_col:
            st.metric("Total Income", f"{income['Amount'].sum():,.1f}万円")
        with exp_col:
            st.metric("Total Expenses", f"{expenses['Amount'].sum():,.1f}万円")
        with net_col:
            st.metric("Annual Cashflow", format_man_yen(record.annual_cashflow))

        st.pyplot(plot_annual_breakdown(income, expenses, selected_year))

        table_col1, table_col2 = st.columns(2)
        with table_col1:
            st.dataframe(income, use_container_width=True, hide_index=True)
        with table_col2:
            st.dataframe(expenses, use_container_width=True, hide_index=True)

    with tab3:
        energy_df = energy_flow_frame(result)
        st.pyplot(plot_energy_flow(energy_df))

        totals = result.energy_totals()
        energy_cols = st.columns(len(totals))
        for col, (label, total) in zip(energy_cols, totals.items()):
            with col:
                st.metric(f"{horizon}-Year {label}", f"{total/1000:,.0f} MWh")
        if not params.enable_feed_in_tariff:
            st.info("FIT is disabled: surplus is exported without revenue")

    with tab4:
        show_all = st.checkbox(f"Show all {horizon} years", value=False)
        st.dataframe(ledger_display_frame(result, show_all), use_container_width=True,
                     hide_index=True, height=400)

        csv = result.to_dataframe().to_csv(index=False)
        st.download_button(
            label=" Download Simulation Ledger (CSV)",
            data=csv,
            file_name="pv_battery_simulation.csv",
            mime="text/csv"
        )

    st.markdown("---")

    # ============================================================
    # Sensitivity analysis
    # ============================================================

    st.header(" Sensitivity Analysis")

    st.markdown("Analyze how changes in key parameters affect IRR, NPV and payback")

    sens_col1, sens_col2 = st.columns([1, 2])

    with sens_col1:
        sens_parameter = st.selectbox(
            "Select Parameter",
            options=list(SENSITIVITY_PARAMETERS.keys())
        )

        variations = [-0.20, -0.10, 0, 0.10, 0.20]

        if st.button("Run Sensitivity Analysis", type="primary"):
            st.session_state['sens_results'] = run_sensitivity_analysis(params, sens_parameter, variations)
            st.session_state['sens_parameter'] = sens_parameter

    with sens_col2:
        if 'sens_results' in st.session_state:
            sens_df = st.session_state['sens_results']

            display_df = sens_df.copy()
            display_df['IRR (%)'] = display_df['IRR (%)'].apply(lambda x: f"{x:.2f}%")
            display_df['NPV'] = display_df['NPV'].apply(format_man_yen)
            display_df['Payback (years)'] = display_df['Payback (years)'].apply(lambda x: f"{x:.1f}")

            st.dataframe(display_df[['Variation', 'IRR (%)', 'NPV', 'Payback (years)']],
                         use_container_width=True, hide_index=True)

            st.pyplot(plot_tornado(sens_df, st.session_state['sens_parameter']))

    st.markdown("---")

    # ============================================================
    # Scenario comparison
    # ============================================================

    st.header(" Scenario Comparison")

    st.markdown("Compare Base / Pessimistic / Optimistic electricity price and discount rate assumptions")

    if st.button("Run Scenario Analysis", type="primary"):
        st.session_state['scenario_results'] = compare_scenarios(build_preset_scenarios(params))

    if 'scenario_results' in st.session_state:
        st.dataframe(format_scenario_table(st.session_state['scenario_results']),
                     use_container_width=True, hide_index=True)

        definitions: List[str] = [
            f"- **{name}**: {preset['description']}" for name, preset in SCENARIO_PRESETS.items()
        ]
        st.markdown("**Scenario Definitions:**\n" + "\n".join(definitions))

    st.markdown("---")

    with st.expander(" Model Notes & Documentation"):
        st.markdown(f"""
        ### Household PV + Battery Financial Model

        **Horizon:** {horizon} operating years, annual time step, nominal yen.

        **Initial cost:** 260,000 yen/kW PV + 200,000 yen/kWh battery + 880,000 yen installation,
        less national and local subsidies.

        **Energy:** 1,000 kWh/kW/year degrading 0.5%/year. The battery shifts up to
        capacity x 365 cycles x 90% efficiency of surplus into own use each year.

        **Cashflow:** self-consumption savings + feed-in revenue + demand-response revenue,
        minus grid purchases, maintenance (1%/year), insurance (0.5%/year) and replacements.
        Feed-in tariff halves after 10 years.

        **Replacements** (prices decline 2%/year): smart meter every 10 years,
        battery every 12, inverter every 15, panels every 25.

        **IRR:** Newton-Raphson; shown as N/A when cumulative cashflow never turns positive.
        """)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    main()
