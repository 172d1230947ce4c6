"""Advisory service - AI explanations and pre-trade risk checks."""
