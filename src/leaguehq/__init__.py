"""Payment reconciliation and eligibility gating for youth-sports competitions."""
