import warnings as _warnings

_warnings.filterwarnings("ignore", category=FutureWarning, module="yfinance")
