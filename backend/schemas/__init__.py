# schemas/__init__.py
# ============================================================================
# SHIPROCKET → TRIPLE WHALE BRIDGE — SCHEMAS
# ============================================================================
# Inbound event shapes (schemas.events) and outbound metric/result shapes
# (schemas.metrics).
# ============================================================================
