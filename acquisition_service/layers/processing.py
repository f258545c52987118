"""
数据处理层 – 行情快照计算
把分钟 K 线清洗为 DataFrame，并计算模式切换所需的波动率与成交量倍数。
"""

import logging
from typing import Any, Dict, List

import pandas as pd

logger = logging.getLogger(__name__)


class ProcessingLayer:
    """数据处理层：清洗 + 快照指标"""

    def normalize_candles(self, records: List[Dict[str, Any]]) -> pd.DataFrame:
        """
        将原始 K 线记录列表标准化为按时间升序的 DataFrame

        标准列：timestamp, open, high, low, close, volume
        """
        if not records:
            return pd.DataFrame()

        df = pd.DataFrame(records)

        required = ["timestamp", "open", "high", "low", "close", "volume"]
        for col in required:
            if col not in df.columns:
                df[col] = 0.0

        for col in ["open", "high", "low", "close", "volume"]:
            df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0.0)

        df["timestamp"] = pd.to_datetime(df["timestamp"], errors="coerce", utc=True)
        df = df.dropna(subset=["timestamp"])

        # Upbit 按时间倒序返回，去重后统一为升序
        df = df.drop_duplicates(subset=["timestamp"], keep="last")
        df = df.sort_values("timestamp").reset_index(drop=True)
        return df

    def volatility(self, df: pd.DataFrame) -> float:
        """窗口内振幅（%）：(最高价 - 最低价) / 首根开盘价"""
        if df.empty:
            return 0.0
        first_open = df["open"].iloc[0]
        if first_open <= 0:
            return 0.0
        return float((df["high"].max() - df["low"].min()) / first_open * 100)

    def volume_spike(self, df: pd.DataFrame) -> float:
        """最新一根成交量相对此前平均成交量的倍数"""
        if len(df) < 2:
            return 0.0
        baseline = df["volume"].iloc[:-1].mean()
        if baseline <= 0:
            return 0.0
        return float(df["volume"].iloc[-1] / baseline)

    def snapshot_metrics(self, records: List[Dict[str, Any]]) -> Dict[str, float]:
        df = self.normalize_candles(records)
        return {
            "volatility": round(self.volatility(df), 4),
            "volume_spike": round(self.volume_spike(df), 4),
        }
