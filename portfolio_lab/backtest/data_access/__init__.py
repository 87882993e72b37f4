from portfolio_lab.backtest.data_access.loader import load_price_frame, load_price_provider

__all__ = ["load_price_frame", "load_price_provider"]
