"""Complete CLV estimation demo with synthetic BG/NBD data.

This example demonstrates the full CLV estimation pipeline:
1. Generate a synthetic transaction log from known model parameters
2. Validate purchase predictions on a holdout window
3. Fit both models on the full log and score every customer
4. Analyze customer tiers
"""

import logging
from datetime import datetime, timedelta

from clv_estimator.models.bg_nbd import BGNBDParameters
from clv_estimator.pipeline import (
    PipelineConfig,
    run_clv_pipeline,
    run_holdout_validation,
)
from clv_estimator.synthetic import generate_bg_nbd_transactions


def main():
    """Demonstrate complete CLV estimation pipeline."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    print("=" * 80)
    print("Complete CLV Estimation Demo with Synthetic Data")
    print("=" * 80)

    # Step 1: Generate synthetic data
    print("\n📊 Step 1: Generating synthetic transaction log...")
    true_params = BGNBDParameters(r=0.25, alpha=4.0, a=0.8, b=2.5)
    start = datetime(2023, 1, 2)
    end = start + timedelta(weeks=78)
    transactions = generate_bg_nbd_transactions(
        2000,
        true_params,
        start,
        end,
        acquisition_end=start + timedelta(weeks=26),
        seed=42,
    )
    customers = {t.customer_id for t in transactions}
    print(f"✓ Generated {len(transactions):,} transactions from {len(customers)} customers")
    print(f"  True BG/NBD parameters: {true_params.as_dict()}")

    # Step 2: Holdout validation
    print("\n🔍 Step 2: Validating on the last 26 weeks...")
    evaluation = run_holdout_validation(
        transactions, calibration_end=start + timedelta(weeks=52), observation_end=end
    )
    print(f"  Actual holdout transactions:    {evaluation.total_actual:,.0f}")
    print(f"  Predicted holdout transactions: {evaluation.total_predicted:,.1f}")
    print(f"  ARPE: {evaluation.metrics.arpe}%  MAE: {evaluation.metrics.mae}")
    print(evaluation.by_frequency.to_string(index=False))

    # Step 3: Full pipeline
    print("\n🤖 Step 3: Fitting models and scoring customers...")
    config = PipelineConfig(horizon=52.0, parallel_fits=True)
    result = run_clv_pipeline(transactions, config, observation_end=end)
    for model, params in result.parameters_as_dict().items():
        formatted = ", ".join(f"{k}={v:.3f}" for k, v in params.items())
        print(f"✓ {model}: {formatted}")

    scores = result.scores
    defined = scores.dropna(subset=["clv"])
    print(f"\n💵 Overall Metrics ({config.horizon:.0f} {config.time_unit.value}s):")
    print(f"  Customers scored: {len(scores)}")
    print(f"  Undefined CLV (no repeat spend): {len(scores) - len(defined)}")
    print(f"  Total CLV: ${defined['clv'].sum():,.2f}")
    print(f"  Average CLV: ${defined['clv'].mean():.2f}")
    print(f"  Median CLV: ${defined['clv'].median():.2f}")

    # Top 10 customers
    print("\n🏆 Top 10 Customers by CLV:")
    for idx, row in scores.head(10).iterrows():
        print(
            f"  {idx + 1}. {row['customer_id']}: "
            f"CLV=${row['clv']:.2f}, "
            f"P(alive)={row['prob_alive']:.3f}, "
            f"E[tx]={row['expected_transactions']:.1f}, "
            f"E[spend]=${row['expected_average_spend']:.2f}"
        )

    # Step 4: Tiers
    print("\n🎯 Customer Tiers:")
    total = defined["clv"].sum()
    for tier, group in scores.groupby("tier", sort=False):
        share = group["clv"].sum() / total * 100 if total else 0.0
        print(
            f"  {tier:<10} {len(group):>5} customers, "
            f"{share:5.1f}% of CLV, avg P(alive)={group['prob_alive'].mean():.3f}"
        )

    print("\n" + "=" * 80)
    print("✅ CLV Estimation Demo Complete!")
    print("=" * 80)


if __name__ == "__main__":
    main()
