"""引擎层：历史回测（backtest_engine）与实时监控周期（monitor）。"""
