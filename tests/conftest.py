"""
Shared input builders for payout engine tests.

The base dataset is one USD sales rep on a single-metric linear plan for 2025:
target bonus $120,000, New Software Booking ARR target $1,200,000.
"""

import copy

import pytest

BASE_DATASET = {
    "employees": [
        {
            "employee_id": "E1",
            "full_name": "Alex Morgan",
            "local_currency": "USD",
            "date_of_hire": "2025-01-01",
            "tvp_usd": 200000,
        },
    ],
    "plans": [
        {
            "plan_id": "P-AE",
            "name": "Account Executive 2025",
            "effective_year": 2025,
            "clawback_period_days": 180,
            "metrics": [
                {
                    "metric_name": "New Software Booking ARR",
                    "weightage_percent": 100,
                    "logic_type": "Linear",
                },
            ],
        },
    ],
    "assignments": [
        {
            "assignment_id": "A1",
            "employee_id": "E1",
            "plan_id": "P-AE",
            "effective_start_date": "2025-01-01",
            "effective_end_date": "2025-12-31",
            "target_bonus_usd": 120000,
        },
    ],
    "performance_targets": [
        {
            "employee_id": "E1",
            "metric_name": "New Software Booking ARR",
            "effective_year": 2025,
            "target_value_usd": 1200000,
        },
    ],
    "deals": [
        {
            "deal_id": "D1",
            "month_year": "2025-01",
            "project_id": "PRJ-1",
            "customer_name": "Northwind",
            "new_software_booking_arr_usd": 300000,
            "sales_rep_employee_id": "E1",
        },
    ],
    "deal_collections": [],
    "closing_arr_actuals": [],
    "exchange_rates": [],
}


def build_dataset(**overrides) -> dict:
    """Deep copy of the base dataset with top-level keys replaced."""
    data = copy.deepcopy(BASE_DATASET)
    data.update(copy.deepcopy(overrides))
    return data


@pytest.fixture
def dataset_dict():
    return build_dataset()


@pytest.fixture
def make_dataset():
    return build_dataset
