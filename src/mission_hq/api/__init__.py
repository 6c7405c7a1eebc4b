"""HTTP surface for mission orchestration."""
