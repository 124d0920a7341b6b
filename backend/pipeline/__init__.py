# pipeline/__init__.py
# ============================================================================
# SHIPROCKET → TRIPLE WHALE BRIDGE — SYNC PIPELINE
# ============================================================================
# verify → classify → transform → deliver, plus the resilience primitives
# every outbound call runs through.
# ============================================================================
