"""
Household PV + Battery Financial Model
======================================
Simulation engine for a residential rooftop solar + home battery installation.
Projects a year-by-year energy and cash ledger and derives the investment
KPIs (payback period, NPV, IRR) from it.

Analysis: 50-year horizon, annual time step, nominal yen
Scope: rooftop PV (kW) + optional home battery (kWh) behind one meter
"""

import logging
import math
import numbers
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

# ============================================================
# 1. CONSTANTS AND CONFIGURATION
# ============================================================

# IRR reporting range (%) and Newton-Raphson settings
IRR_UNBOUNDED = 999.9  # no net investment, or rate driven to overflow
IRR_FLOOR = -99.9
IRR_NOT_RECOVERED = -100.0  # cashflows never sum above zero
IRR_MAX_ITERATIONS = 100
IRR_TOLERANCE = 0.00001
IRR_MIN_DERIVATIVE = 0.0001
IRR_RATE_BOUNDS = (-0.99, 9.99)


@dataclass(frozen=True)
class ReplacementRule:
    """
    Periodic replacement of one equipment class.

    The rule fires in every year that is a multiple of ``interval_years``.
    Its cost is ``base_cost`` times the capacity named by ``capacity_basis``
    ("solar" kW, "battery" kWh, or "flat" for a per-unit price), reduced by
    the equipment price decline for that year.
    """
    item: str
    interval_years: int
    base_cost: float  # yen per kW, per kWh, or per unit
    capacity_basis: str = "flat"
    skip_year_zero: bool = False

    def applies(self, year: int, battery_capacity_kwh: float) -> bool:
        """True when this equipment class is replaced in ``year``."""
        if self.capacity_basis == "battery" and battery_capacity_kwh <= 0:
            return False
        if self.skip_year_zero and year <= 0:
            return False
        return year % self.interval_years == 0

    def capacity(self, solar_capacity_kw: float, battery_capacity_kwh: float) -> float:
        if self.capacity_basis == "solar":
            return solar_capacity_kw
        if self.capacity_basis == "battery":
            return battery_capacity_kwh
        return 1.0


# Evaluated in order; labels of coinciding replacements are joined in this order
REPLACEMENT_SCHEDULE: Tuple[ReplacementRule, ...] = (
    ReplacementRule("Smart meter", interval_years=10, base_cost=80000),
    ReplacementRule("Battery", interval_years=12, base_cost=160000, capacity_basis="battery"),
    ReplacementRule("Inverter", interval_years=15, base_cost=40000, capacity_basis="solar"),
    ReplacementRule("Solar panels", interval_years=25, base_cost=195000,
                    capacity_basis="solar", skip_year_zero=True),
)


@dataclass(frozen=True)
class SimulationConstants:
    """
    Cost, yield and policy constants shared by every simulation run.

    Defaults reflect Japanese residential market prices (yen). A deployment
    with different prices passes its own instance to run_simulation().
    """
    # Initial investment
    solar_cost_per_kw: float = 260000  # yen/kW
    battery_cost_per_kwh: float = 200000  # yen/kWh
    installation_cost: float = 880000  # yen (fixed construction works)
    subsidy_unit: float = 10000  # subsidies are entered in 10,000-yen blocks

    # Generation
    generation_per_kw: float = 1000  # kWh/kW/year nominal yield
    degradation_rate: float = 0.005  # 0.5%/year panel degradation

    # Battery (annual energy bucket, not hourly dispatch)
    battery_efficiency: float = 0.9  # round-trip
    battery_cycles_per_year: int = 365  # one full cycle per day

    # Other revenue and running costs
    dr_revenue_per_kwh: float = 250  # yen per kWh of battery per year (demand response)
    maintenance_rate: float = 0.01  # share of gross initial cost per year
    insurance_rate: float = 0.005  # share of gross initial cost per year

    # Feed-in tariff
    fit_period_years: int = 10
    post_fit_rate_ratio: float = 0.5  # tariff multiplier after the FIT period

    # Equipment replacement
    replacement_price_decline_rate: float = 0.02  # 2%/year equipment price decline
    replacement_schedule: Tuple[ReplacementRule, ...] = REPLACEMENT_SCHEDULE

    # Analysis horizon
    simulation_years: int = 50

    def __post_init__(self):
        if self.simulation_years < 1:
            raise ValueError(f"simulation_years must be at least 1, got {self.simulation_years}")


class ParameterValidationError(ValueError):
    """Raised when InputParameters fall outside the engine's input domain."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid input parameters: " + "; ".join(self.errors))


@dataclass(frozen=True)
class InputParameters:
    """
    Household system, usage and tariff parameters for one simulation run.

    Values are checked on construction (see validate()). Ranges offered by
    the input form live in PARAMETER_CONFIG and are not enforced here.
    """
    # System configuration
    solar_capacity_kw: float = 10.0
    battery_capacity_kwh: float = 0.0

    # Electricity usage
    annual_consumption_kwh: float = 4500.0
    self_consumption_rate_pct: float = 100.0  # 0-200%; above 100 = demand exceeds generation

    # Feed-in tariff
    enable_feed_in_tariff: bool = False
    feed_in_tariff_rate: float = 16.0  # yen/kWh during the FIT period

    # Subsidies (10,000-yen blocks)
    subsidy_national: float = 0.0
    subsidy_local: float = 0.0

    # Electricity tariff
    electricity_base_price: float = 30.0  # yen/kWh in year 1
    electricity_price_increase_rate_pct: float = 2.0  # %/year

    # Finance
    discount_rate_pct: float = 3.0  # %/year for NPV

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Check the parameters against the simulation's input domain.

        Every numeric field must be a finite, non-negative number; solar
        capacity and consumption must be strictly positive and the
        self-consumption rate must lie in 0-200%.

        Raises:
            ParameterValidationError: listing every offending field
        """
        errors = []
        numeric_ok = set()

        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == 'enable_feed_in_tariff':
                if not isinstance(value, (bool, np.bool_)):
                    errors.append(f"{f.name} must be a boolean, got {value!r}")
                continue
            if isinstance(value, (bool, np.bool_)) or not isinstance(value, numbers.Real):
                errors.append(f"{f.name} must be a number, got {value!r}")
            elif not math.isfinite(value):
                errors.append(f"{f.name} must be finite, got {value!r}")
            elif value < 0:
                errors.append(f"{f.name} must be non-negative, got {value!r}")
            else:
                numeric_ok.add(f.name)

        if 'solar_capacity_kw' in numeric_ok and self.solar_capacity_kw == 0:
            errors.append("solar_capacity_kw must be greater than 0")
        if 'annual_consumption_kwh' in numeric_ok and self.annual_consumption_kwh == 0:
            errors.append("annual_consumption_kwh must be greater than 0")
        if 'self_consumption_rate_pct' in numeric_ok and self.self_consumption_rate_pct > 200:
            errors.append(
                f"self_consumption_rate_pct must be between 0 and 200, got {self.self_consumption_rate_pct!r}"
            )

        if errors:
            raise ParameterValidationError(errors)


DEFAULT_PARAMETERS = InputParameters()

# Input form metadata: label, help text, slider range and unit per field
PARAMETER_CONFIG: Dict[str, Dict] = {
    'solar_capacity_kw': {
        'label': 'Solar Panel Capacity',
        'description': 'Total rated capacity of the installed PV panels',
        'min': 3, 'max': 50, 'step': 0.5, 'unit': 'kW',
    },
    'battery_capacity_kwh': {
        'label': 'Battery Capacity',
        'description': 'Usable capacity of the home battery (0 = no battery)',
        'min': 0, 'max': 50, 'step': 0.5, 'unit': 'kWh',
    },
    'annual_consumption_kwh': {
        'label': 'Annual Electricity Consumption',
        'description': 'Household electricity use per year',
        'min': 1000, 'max': 20000, 'step': 100, 'unit': 'kWh',
    },
    'self_consumption_rate_pct': {
        'label': 'Self-Consumption Rate',
        'description': 'Share of generation used on site; above 100% means demand exceeds generation',
        'min': 0, 'max': 200, 'step': 1, 'unit': '%',
    },
    'feed_in_tariff_rate': {
        'label': 'Feed-in Tariff',
        'description': 'Export price under the FIT scheme (applies for 10 years, then halves)',
        'min': 0, 'max': 50, 'step': 1, 'unit': 'yen/kWh',
    },
    'subsidy_national': {
        'label': 'National Subsidy',
        'description': 'Subsidy granted by the national government',
        'min': 0, 'max': 200, 'step': 1, 'unit': '10k yen',
    },
    'subsidy_local': {
        'label': 'Local Subsidy',
        'description': 'Subsidy granted by the local municipality',
        'min': 0, 'max': 200, 'step': 1, 'unit': '10k yen',
    },
    'electricity_base_price': {
        'label': 'Electricity Price',
        'description': 'Current retail electricity price',
        'min': 20, 'max': 60, 'step': 1, 'unit': 'yen/kWh',
    },
    'electricity_price_increase_rate_pct': {
        'label': 'Electricity Price Increase',
        'description': 'Annual escalation of the retail electricity price',
        'min': 0, 'max': 10, 'step': 0.1, 'unit': '%/year',
    },
    'discount_rate_pct': {
        'label': 'Discount Rate',
        'description': 'Annual discount rate used for NPV',
        'min': 0, 'max': 10, 'step': 0.1, 'unit': '%',
    },
}


def check_parameter_ranges(params: InputParameters) -> List[str]:
    """
    List the fields whose values fall outside the input form ranges.

    Advisory only: the engine simulates any parameters that pass validate().
    """
    messages = []
    for name, config in PARAMETER_CONFIG.items():
        value = getattr(params, name)
        if value < config['min'] or value > config['max']:
            messages.append(
                f"{config['label']} = {value:g} {config['unit']} is outside the "
                f"supported range {config['min']:g}-{config['max']:g} {config['unit']}"
            )
    return messages


def estimate_annual_consumption(solar_capacity_kw: float, self_consumption_rate_pct: float) -> int:
    """
    Rough consumption estimate from panel size: kW x rate x 24 h x 365 days.

    Rounds half up to whole kWh.
    """
    annual_usage = solar_capacity_kw * (self_consumption_rate_pct / 100) * 24 * 365
    return int(math.floor(annual_usage + 0.5))


# ============================================================
# 2. LEDGER DATA STRUCTURES
# ============================================================

@dataclass(frozen=True)
class EnergyFlow:
    """Annual allocation of generated and consumed energy (kWh)."""
    self_consumed: float
    grid_purchase: float
    surplus: float


@dataclass(frozen=True)
class LedgerState:
    """Running totals carried from one simulated year to the next."""
    cumulative_cashflow: float
    npv: float


@dataclass(frozen=True)
class YearlyRecord:
    """One row of the simulation ledger. Energy in kWh, money in yen."""
    year: int
    generation: float
    self_consumed: float
    grid_purchase: float
    feed_in: float
    electricity_price: float
    feed_in_revenue: float
    savings_from_self_consumption: float
    grid_purchase_cost: float
    dr_revenue: float
    maintenance_cost: float
    insurance_cost: float
    replacement_cost: float
    replacement_item: str
    annual_cashflow: float
    cumulative_cashflow: float
    discounted_cashflow: float
    npv: float


# Ledger field -> DataFrame column
LEDGER_COLUMNS: Dict[str, str] = {
    'year': 'Year',
    'generation': 'Generation_kWh',
    'self_consumed': 'Self_Consumed_kWh',
    'grid_purchase': 'Grid_Purchase_kWh',
    'feed_in': 'Feed_In_kWh',
    'electricity_price': 'Electricity_Price',
    'feed_in_revenue': 'Feed_In_Revenue',
    'savings_from_self_consumption': 'Self_Consumption_Savings',
    'grid_purchase_cost': 'Grid_Purchase_Cost',
    'dr_revenue': 'DR_Revenue',
    'maintenance_cost': 'Maintenance',
    'insurance_cost': 'Insurance',
    'replacement_cost': 'Replacement_Cost',
    'replacement_item': 'Replacement_Item',
    'annual_cashflow': 'Annual_Cashflow',
    'cumulative_cashflow': 'Cumulative_Cashflow',
    'discounted_cashflow': 'Discounted_Cashflow',
    'npv': 'NPV',
}


class IRRStatus(Enum):
    CONVERGED = "converged"
    SATURATED = "saturated"
    FLAT_DERIVATIVE = "flat_derivative"
    EXHAUSTED_ITERATIONS = "exhausted_iterations"


@dataclass(frozen=True)
class IRRSolution:
    """IRR in percent together with how the solver arrived at it."""
    rate_pct: float
    status: IRRStatus
    iterations: int = 0


@dataclass(frozen=True)
class SimulationResult:
    """
    Complete output of one simulation run.

    ``initial_cost`` is the net (post-subsidy) investment; ``total_cashflow``
    is the final cumulative cashflow and ``npv`` the final running NPV.
    """
    yearly_data: Tuple[YearlyRecord, ...]
    payback_period: float  # years, saturates at the horizon length
    total_cashflow: float
    npv: float
    irr: float  # %
    initial_cost: float
    gross_initial_cost: float
    irr_status: IRRStatus

    @property
    def annual_cashflows(self) -> List[float]:
        return [record.annual_cashflow for record in self.yearly_data]

    @property
    def cumulative_cashflows(self) -> List[float]:
        return [record.cumulative_cashflow for record in self.yearly_data]

    def to_dataframe(self) -> pd.DataFrame:
        """Ledger as a DataFrame, one row per year."""
        rows = [
            {column: getattr(record, name) for name, column in LEDGER_COLUMNS.items()}
            for record in self.yearly_data
        ]
        return pd.DataFrame(rows, columns=list(LEDGER_COLUMNS.values()))

    def energy_totals(self) -> Dict[str, float]:
        """Horizon totals of each energy stream (kWh)."""
        return {
            'Generation': float(np.sum([r.generation for r in self.yearly_data])),
            'Self-Consumed': float(np.sum([r.self_consumed for r in self.yearly_data])),
            'Feed-In': float(np.sum([r.feed_in for r in self.yearly_data])),
            'Grid Purchase': float(np.sum([r.grid_purchase for r in self.yearly_data])),
        }


# ============================================================
# 3. COST MODEL
# ============================================================

def calculate_initial_cost(solar_capacity_kw: float, battery_capacity_kwh: float,
                           constants: SimulationConstants = None) -> float:
    """Gross installed cost: panels + battery + fixed installation works."""
    if constants is None:
        constants = SimulationConstants()
    return (
        solar_capacity_kw * constants.solar_cost_per_kw +
        battery_capacity_kwh * constants.battery_cost_per_kwh +
        constants.installation_cost
    )


def calculate_net_initial_cost(initial_cost: float, params: InputParameters,
                               constants: SimulationConstants = None) -> float:
    """Initial cost after national and local subsidies (entered in 10,000-yen blocks)."""
    if constants is None:
        constants = SimulationConstants()
    return initial_cost - (params.subsidy_national + params.subsidy_local) * constants.subsidy_unit


def calculate_annual_generation(solar_capacity_kw: float, year: int,
                                constants: SimulationConstants = None) -> float:
    """
    PV generation for an operating year (1-indexed).

    Formula: E_t = kW * yield * (1 - degradation_rate)^(t-1)
    """
    if constants is None:
        constants = SimulationConstants()
    return (solar_capacity_kw * constants.generation_per_kw *
            (1 - constants.degradation_rate) ** (year - 1))


def calculate_replacement_cost(year: int, solar_capacity_kw: float, battery_capacity_kwh: float,
                               constants: SimulationConstants = None) -> Tuple[float, str]:
    """
    Equipment replacement spending for a given year.

    Each rule in the replacement schedule is evaluated independently; the
    costs of all rules firing in ``year`` are summed and their item names
    joined in schedule order.

    Args:
        year: Operating year
        solar_capacity_kw: PV capacity (scales inverter and panel costs)
        battery_capacity_kwh: Battery capacity (0 = battery never replaced)
        constants: Cost constants and replacement schedule

    Returns:
        Tuple of (cost in yen, comma-separated item label; empty if none)
    """
    if constants is None:
        constants = SimulationConstants()

    decline_factor = (1 - constants.replacement_price_decline_rate) ** year
    cost = 0.0
    items = []
    for rule in constants.replacement_schedule:
        if not rule.applies(year, battery_capacity_kwh):
            continue
        cost += rule.base_cost * rule.capacity(solar_capacity_kw, battery_capacity_kwh) * decline_factor
        items.append(rule.item)

    return cost, ", ".join(items)


# ============================================================
# 4. ENERGY FLOW AND PRICING
# ============================================================

def calculate_energy_flow(generation: float, consumption: float,
                          self_consumption_rate_pct: float, battery_capacity_kwh: float,
                          constants: SimulationConstants = None) -> EnergyFlow:
    """
    Split a year's generation into self-consumption and surplus.

    The battery is modelled as an annual energy bucket: one cycle per day at
    the round-trip efficiency shifts daytime surplus into evening use.
    Self-consumption never exceeds consumption. With a battery it is also
    capped at generation; without one, a rate above 100% counts demand met
    beyond the panel output as self-consumed.

    Args:
        generation: Annual PV generation (kWh)
        consumption: Annual household consumption (kWh)
        self_consumption_rate_pct: Share of generation targeted for own use (0-200%)
        battery_capacity_kwh: Battery capacity (0 = no battery)
        constants: Battery efficiency and cycle count

    Returns:
        EnergyFlow with self-consumed, grid-purchase and surplus kWh
    """
    if constants is None:
        constants = SimulationConstants()

    target_self_consumption = generation * (self_consumption_rate_pct / 100)

    if battery_capacity_kwh > 0:
        battery_annual_throughput = (battery_capacity_kwh * constants.battery_cycles_per_year *
                                     constants.battery_efficiency)
        max_self_consumption = min(generation, target_self_consumption + battery_annual_throughput)
    else:
        max_self_consumption = target_self_consumption

    self_consumed = min(max_self_consumption, consumption)
    grid_purchase = max(0.0, consumption - self_consumed)
    surplus = max(0.0, generation - self_consumed)

    return EnergyFlow(self_consumed=self_consumed, grid_purchase=grid_purchase, surplus=surplus)


def calculate_electricity_price(base_price: float, increase_rate_pct: float, year: int) -> float:
    """Retail price for an operating year: base * (1 + rate)^(t-1)."""
    return base_price * (1 + increase_rate_pct / 100) ** (year - 1)


def calculate_feed_in_rate(tariff_rate: float, year: int,
                           constants: SimulationConstants = None) -> float:
    """Full tariff during the FIT period, reduced rate afterwards."""
    if constants is None:
        constants = SimulationConstants()
    if year <= constants.fit_period_years:
        return tariff_rate
    return tariff_rate * constants.post_fit_rate_ratio


def calculate_feed_in_revenue(surplus: float, params: InputParameters, year: int,
                              constants: SimulationConstants = None) -> float:
    if not params.enable_feed_in_tariff or surplus <= 0:
        return 0.0
    return surplus * calculate_feed_in_rate(params.feed_in_tariff_rate, year, constants)


def calculate_dr_revenue(battery_capacity_kwh: float, constants: SimulationConstants = None) -> float:
    """Demand-response incentive, a flat rate per kWh of battery capacity."""
    if constants is None:
        constants = SimulationConstants()
    if battery_capacity_kwh <= 0:
        return 0.0
    return battery_capacity_kwh * constants.dr_revenue_per_kwh


# ============================================================
# 5. CASHFLOW ASSEMBLY
# ============================================================

def assemble_year(year: int, params: InputParameters, initial_cost: float,
                  state: LedgerState,
                  constants: SimulationConstants = None) -> Tuple[YearlyRecord, LedgerState]:
    """
    Build the ledger row for one year and the running totals for the next.

    Maintenance and insurance are charged on the gross (pre-subsidy)
    initial cost. Cashflows are discounted to year 0.

    Args:
        year: Operating year (1-indexed)
        params: Simulation inputs
        initial_cost: Gross initial cost (yen)
        state: Cumulative cashflow and NPV after the previous year
        constants: Cost, yield and policy constants

    Returns:
        Tuple of (YearlyRecord, LedgerState after this year)
    """
    if constants is None:
        constants = SimulationConstants()

    # ===== ENERGY =====
    generation = calculate_annual_generation(params.solar_capacity_kw, year, constants)
    flow = calculate_energy_flow(
        generation,
        params.annual_consumption_kwh,
        params.self_consumption_rate_pct,
        params.battery_capacity_kwh,
        constants,
    )

    # ===== REVENUES =====
    electricity_price = calculate_electricity_price(
        params.electricity_base_price, params.electricity_price_increase_rate_pct, year)
    feed_in_revenue = calculate_feed_in_revenue(flow.surplus, params, year, constants)
    savings_from_self_consumption = flow.self_consumed * electricity_price
    dr_revenue = calculate_dr_revenue(params.battery_capacity_kwh, constants)

    # ===== COSTS =====
    grid_purchase_cost = flow.grid_purchase * electricity_price
    maintenance_cost = initial_cost * constants.maintenance_rate
    insurance_cost = initial_cost * constants.insurance_rate
    replacement_cost, replacement_item = calculate_replacement_cost(
        year, params.solar_capacity_kw, params.battery_capacity_kwh, constants)
    if replacement_cost > 0:
        logger.debug("Year %d replacement: %s (%.0f yen)", year, replacement_item, replacement_cost)

    # ===== CASHFLOW =====
    annual_cashflow = (
        feed_in_revenue +
        savings_from_self_consumption +
        dr_revenue -
        grid_purchase_cost -
        maintenance_cost -
        insurance_cost -
        replacement_cost
    )
    cumulative_cashflow = state.cumulative_cashflow + annual_cashflow

    discount_factor = (1 + params.discount_rate_pct / 100) ** year
    discounted_cashflow = annual_cashflow / discount_factor
    npv = state.npv + discounted_cashflow

    record = YearlyRecord(
        year=year,
        generation=generation,
        self_consumed=flow.self_consumed,
        grid_purchase=flow.grid_purchase,
        feed_in=flow.surplus,
        electricity_price=electricity_price,
        feed_in_revenue=feed_in_revenue,
        savings_from_self_consumption=savings_from_self_consumption,
        grid_purchase_cost=grid_purchase_cost,
        dr_revenue=dr_revenue,
        maintenance_cost=maintenance_cost,
        insurance_cost=insurance_cost,
        replacement_cost=replacement_cost,
        replacement_item=replacement_item,
        annual_cashflow=annual_cashflow,
        cumulative_cashflow=cumulative_cashflow,
        discounted_cashflow=discounted_cashflow,
        npv=npv,
    )
    return record, LedgerState(cumulative_cashflow=cumulative_cashflow, npv=npv)


# ============================================================
# 6. FINANCIAL METRICS
# ============================================================

def calculate_payback_period(cumulative_cashflows: Sequence[float]) -> float:
    """
    Years until the cumulative cashflow turns non-negative.

    Interpolates linearly within the break-even year. A sequence that never
    reaches zero returns its own length (the horizon), not a sentinel.

    Args:
        cumulative_cashflows: Cumulative cashflow at the end of years 1..N

    Returns:
        Payback period in (fractional) years
    """
    for i, current in enumerate(cumulative_cashflows):
        if current >= 0:
            if i == 0:
                return 1.0
            previous = cumulative_cashflows[i - 1]
            return i + (-previous) / (current - previous)
    return float(len(cumulative_cashflows))


def _clamp(value: float, bounds: Tuple[float, float]) -> float:
    low, high = bounds
    return max(low, min(value, high))


def _npv_and_derivative(cashflows: Sequence[float], initial_cost: float,
                        rate: float) -> Optional[Tuple[float, float]]:
    """NPV and dNPV/dr at ``rate``; None when a discount factor is unusable."""
    npv = -initial_cost
    dnpv = 0.0
    try:
        for j, cashflow in enumerate(cashflows):
            discount = (1 + rate) ** (j + 1)
            if not math.isfinite(discount) or discount == 0:
                return None
            npv += cashflow / discount
            dnpv -= (j + 1) * cashflow / (1 + rate) ** (j + 2)
    except (OverflowError, ZeroDivisionError):
        return None
    return npv, dnpv


def solve_irr(cashflows: Sequence[float], initial_cost: float) -> IRRSolution:
    """
    Internal rate of return by Newton-Raphson.

    Solves -initial_cost + sum(cf_j / (1 + r)^(j+1)) = 0. Degenerate inputs
    map to fixed values instead of errors:

    - initial_cost <= 0: 999.9 (no net investment)
    - sum of cashflows <= 0: -100 (investment never recovered)
    - unusable discount factor: 999.9 if the rate was positive, else -99.9

    The iteration starts from the average simple return and keeps the rate
    within [-0.99, 9.99]; results are reported within [-99.9, 999.9] %.

    Args:
        cashflows: Annual cashflows for years 1..N
        initial_cost: Net initial investment at year 0

    Returns:
        IRRSolution with the rate in percent and the solver outcome
    """
    if initial_cost <= 0:
        return IRRSolution(IRR_UNBOUNDED, IRRStatus.SATURATED)

    total_cashflow = sum(cashflows)
    if total_cashflow <= 0:
        return IRRSolution(IRR_NOT_RECOVERED, IRRStatus.SATURATED)

    average_annual_cashflow = total_cashflow / len(cashflows)
    rate = _clamp(average_annual_cashflow / initial_cost, IRR_RATE_BOUNDS)
    result_bounds = (IRR_FLOOR, IRR_UNBOUNDED)

    for iteration in range(1, IRR_MAX_ITERATIONS + 1):
        evaluated = _npv_and_derivative(cashflows, initial_cost, rate)
        if evaluated is None:
            return IRRSolution(IRR_UNBOUNDED if rate > 0 else IRR_FLOOR,
                               IRRStatus.SATURATED, iteration)
        npv, dnpv = evaluated

        if abs(dnpv) < IRR_MIN_DERIVATIVE:
            return IRRSolution(_clamp(rate * 100, result_bounds),
                               IRRStatus.FLAT_DERIVATIVE, iteration)

        new_rate = rate - npv / dnpv
        if abs(new_rate - rate) < IRR_TOLERANCE:
            return IRRSolution(_clamp(new_rate * 100, result_bounds),
                               IRRStatus.CONVERGED, iteration)

        rate = _clamp(new_rate, IRR_RATE_BOUNDS)

    return IRRSolution(_clamp(rate * 100, result_bounds),
                       IRRStatus.EXHAUSTED_ITERATIONS, IRR_MAX_ITERATIONS)


def calculate_irr(cashflows: Sequence[float], initial_cost: float) -> float:
    """IRR in percent; see solve_irr()."""
    return solve_irr(cashflows, initial_cost).rate_pct


# ============================================================
# 7. SIMULATION
# ============================================================

def run_simulation(params: InputParameters,
                   constants: SimulationConstants = None) -> SimulationResult:
    """
    Simulate the installation over the full horizon and derive its KPIs.

    Pure function: identical inputs always give an identical result.

    Args:
        params: Validated simulation inputs
        constants: Cost, yield and policy constants (defaults if None)

    Returns:
        SimulationResult with the yearly ledger, payback, NPV and IRR
    """
    if constants is None:
        constants = SimulationConstants()

    initial_cost = calculate_initial_cost(params.solar_capacity_kw, params.battery_capacity_kwh, constants)
    net_initial_cost = calculate_net_initial_cost(initial_cost, params, constants)
    logger.debug("Simulating %d years: %.1f kW PV, %.1f kWh battery, net initial cost %.0f yen",
                 constants.simulation_years, params.solar_capacity_kw,
                 params.battery_capacity_kwh, net_initial_cost)

    # Year 0 baseline: the net investment
    state = LedgerState(cumulative_cashflow=-net_initial_cost, npv=-net_initial_cost)
    yearly_data = []
    for year in range(1, constants.simulation_years + 1):
        record, state = assemble_year(year, params, initial_cost, state, constants)
        yearly_data.append(record)

    payback_period = calculate_payback_period([r.cumulative_cashflow for r in yearly_data])
    irr = solve_irr([r.annual_cashflow for r in yearly_data], net_initial_cost)
    logger.debug("IRR %s after %d iterations: %.2f%%", irr.status.value, irr.iterations, irr.rate_pct)

    return SimulationResult(
        yearly_data=tuple(yearly_data),
        payback_period=payback_period,
        total_cashflow=state.cumulative_cashflow,
        npv=yearly_data[-1].npv,
        irr=irr.rate_pct,
        initial_cost=net_initial_cost,
        gross_initial_cost=initial_cost,
        irr_status=irr.status,
    )


# ============================================================
# 8. SCENARIO AND SENSITIVITY ANALYSIS
# ============================================================

# Preset scenarios as multipliers on the current inputs
SCENARIO_PRESETS: Dict[str, Dict] = {
    'Base Case': {
        'description': 'Current input parameters',
        'multipliers': {},
    },
    'Pessimistic': {
        'description': 'Lower electricity price and escalation, higher discount rate',
        'multipliers': {
            'electricity_base_price': 0.9,
            'electricity_price_increase_rate_pct': 0.5,
            'discount_rate_pct': 1.5,
        },
    },
    'Optimistic': {
        'description': 'Higher electricity price and escalation, lower discount rate',
        'multipliers': {
            'electricity_base_price': 1.1,
            'electricity_price_increase_rate_pct': 1.5,
            'discount_rate_pct': 0.5,
        },
    },
}

# Sensitivity parameter -> InputParameters fields varied together
SENSITIVITY_PARAMETERS: Dict[str, Tuple[str, ...]] = {
    'Electricity Price': ('electricity_base_price',),
    'Price Escalation': ('electricity_price_increase_rate_pct',),
    'Discount Rate': ('discount_rate_pct',),
    'Feed-in Tariff': ('feed_in_tariff_rate',),
    'Subsidies': ('subsidy_national', 'subsidy_local'),
    'Solar Capacity': ('solar_capacity_kw',),
    'Battery Capacity': ('battery_capacity_kwh',),
}


def _scale_fields(params: InputParameters, multipliers: Dict[str, float]) -> InputParameters:
    return replace(params, **{name: getattr(params, name) * factor
                              for name, factor in multipliers.items()})


def build_preset_scenarios(params: InputParameters) -> Dict[str, InputParameters]:
    """Apply every SCENARIO_PRESETS entry to ``params``."""
    return {
        name: _scale_fields(params, preset['multipliers'])
        for name, preset in SCENARIO_PRESETS.items()
    }


def compare_scenarios(scenarios: Dict[str, InputParameters],
                      constants: SimulationConstants = None) -> pd.DataFrame:
    """
    Run one simulation per scenario and tabulate the KPIs.

    Args:
        scenarios: Scenario name -> inputs
        constants: Shared cost, yield and policy constants

    Returns:
        DataFrame with one row per scenario
    """
    if not scenarios:
        raise ValueError("At least one scenario is required")

    results = []
    for scenario_name, scenario_params in scenarios.items():
        result = run_simulation(scenario_params, constants)
        results.append({
            'Scenario': scenario_name,
            'Net Initial Cost': result.initial_cost,
            'Payback (years)': result.payback_period,
            'Total Cashflow': result.total_cashflow,
            'NPV': result.npv,
            'IRR (%)': result.irr,
        })
    logger.debug("Compared %d scenarios", len(results))

    return pd.DataFrame(results)


def run_sensitivity_analysis(base_params: InputParameters, parameter: str,
                             variations: Sequence[float],
                             constants: SimulationConstants = None) -> pd.DataFrame:
    """
    Run sensitivity analysis on a single parameter.

    Args:
        base_params: Base case inputs
        parameter: Key of SENSITIVITY_PARAMETERS to vary
        variations: Relative changes (e.g., [-0.2, -0.1, 0, 0.1, 0.2])
        constants: Shared cost, yield and policy constants

    Returns:
        DataFrame with IRR, NPV and payback per variation

    Raises:
        ValueError: for an unknown parameter; ParameterValidationError when a
            variation leaves the input domain (e.g. -100% solar capacity)
    """
    if parameter not in SENSITIVITY_PARAMETERS:
        raise ValueError(
            f"Unknown sensitivity parameter {parameter!r}; "
            f"expected one of {sorted(SENSITIVITY_PARAMETERS)}"
        )

    results = []
    for var in variations:
        varied = _scale_fields(base_params, {name: 1 + var for name in SENSITIVITY_PARAMETERS[parameter]})
        result = run_simulation(varied, constants)
        results.append({
            'Variation': f"{var*100:+.0f}%",
            'Variation_Value': var,
            'IRR (%)': result.irr,
            'NPV': result.npv,
            'Payback (years)': result.payback_period,
        })

    return pd.DataFrame(results)
