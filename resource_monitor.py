#!/usr/bin/env python3
"""
资源监控和诊断工具 - 监控 WebSocket 中继进程的资源使用情况

功能:
1. 监控进程的内存、CPU、线程和文件描述符数量
2. 记录活跃会话数
3. 超过阈值时通过日志告警
4. 生成诊断报告

中继服务在 monitor_interval > 0 时于进程内启动监控循环；
也可以作为独立工具按 PID 监控一个正在运行的中继进程。
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime
from typing import Callable, Dict, List, Optional

import psutil

logger = logging.getLogger('ws-relay-monitor')

# 指标名 -> (显示名称, 单位)
METRICS = {
    'memory_mb': ("内存", "MB"),
    'cpu_percent': ("CPU", "%"),
    'num_fds': ("文件描述符", ""),
    'sessions': ("活跃会话", ""),
}


class ResourceMonitor:
    """资源监控器"""

    def __init__(self, pid: Optional[int] = None, check_interval: float = 60.0,
                 session_counter: Optional[Callable[[], int]] = None):
        """
        初始化资源监控器

        参数:
            pid: 要监控的进程 PID，默认为当前进程
            check_interval: 检查间隔 (秒)
            session_counter: 返回当前活跃会话数的回调（进程内监控时使用）
        """
        self.process = psutil.Process(pid or os.getpid())
        self.check_interval = check_interval
        self.session_counter = session_counter
        self.history: List[Dict] = []
        self.max_history = 1000

        self.thresholds = {
            'memory_mb': 500,
            'cpu_percent': 80,
            'num_fds': 1000,
            'sessions': 1000,
        }

    def get_process_stats(self) -> Optional[Dict]:
        """
        获取进程统计信息

        返回:
            Dict: 统计信息，进程不存在或无权限时返回 None
        """
        try:
            with self.process.oneshot():
                return {
                    'timestamp': datetime.now(),
                    'pid': self.process.pid,
                    'memory_mb': self.process.memory_info().rss / (1024 * 1024),
                    'cpu_percent': self.process.cpu_percent(interval=None),
                    'num_threads': self.process.num_threads(),
                    'num_fds': self.process.num_fds() if hasattr(self.process, 'num_fds') else 0,
                    'sessions': self.session_counter() if self.session_counter else 0,
                }
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    def check_thresholds(self, stats: Dict) -> List[str]:
        """返回超过阈值的指标告警，格式为 "<名称>过高: <值> > <阈值>" """
        warnings = []
        for key, limit in self.thresholds.items():
            value = stats.get(key, 0)
            if value > limit:
                label, unit = METRICS.get(key, (key, ""))
                warnings.append(f"{label}过高: {value:.1f}{unit} > {limit}{unit}")
        return warnings

    def monitor_once(self) -> Optional[Dict]:
        """
        执行一次监控检查，结果写入历史并记录日志

        返回:
            Dict: 统计信息加告警列表，进程不可用时返回 None
        """
        stats = self.get_process_stats()
        if stats is None:
            logger.warning(f"无法读取进程 {self.process.pid} 的资源信息")
            return None

        stats['warnings'] = self.check_thresholds(stats)
        self.history.append(stats)
        if len(self.history) > self.max_history:
            del self.history[:len(self.history) - self.max_history]

        logger.info(
            f"资源: 内存={stats['memory_mb']:.1f}MB, CPU={stats['cpu_percent']:.1f}%, "
            f"线程={stats['num_threads']}, fds={stats['num_fds']}, 会话={stats['sessions']}"
        )
        for warning in stats['warnings']:
            logger.warning(warning)
        return stats

    async def monitor_loop(self, duration: Optional[float] = None):
        """
        持续监控

        参数:
            duration: 监控时长 (秒), None 表示直到任务被取消
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        # 第一次 cpu_percent(None) 总是返回 0，先取一次基准
        self.process.cpu_percent(interval=None)

        while True:
            await asyncio.sleep(self.check_interval)
            self.monitor_once()
            if duration and (loop.time() - start_time) >= duration:
                break

    def generate_report(self) -> str:
        """生成诊断报告（每个指标的最大值、平均值和首尾变化）"""
        if not self.history:
            return "没有历史数据"

        first, last = self.history[0], self.history[-1]
        lines = [
            "=" * 80,
            f"WebSocket 中继资源报告 (PID {last['pid']})",
            "=" * 80,
            f"时间范围: {first['timestamp']:%Y-%m-%d %H:%M:%S} - {last['timestamp']:%Y-%m-%d %H:%M:%S}",
            f"采样次数: {len(self.history)}",
            "",
        ]

        for key, (label, unit) in METRICS.items():
            values = [h[key] for h in self.history]
            lines.append(
                f"{label:<10} 最大 {max(values):.1f}{unit}  平均 {sum(values) / len(values):.1f}{unit}  "
                f"变化 {values[-1] - values[0]:+.1f}{unit}"
            )

        alerts: Dict[str, int] = {}
        for h in self.history:
            for warning in h['warnings']:
                label = warning.split(':')[0]
                alerts[label] = alerts.get(label, 0) + 1

        lines.append("")
        if alerts:
            lines.append("告警次数:")
            for label, count in sorted(alerts.items(), key=lambda item: -item[1]):
                lines.append(f"  {label}: {count}")
        else:
            lines.append("未触发告警")

        # 会话归零后文件描述符仍在增长，通常说明有连接没有释放
        fds = [h['num_fds'] for h in self.history]
        if len(fds) > 10 and last['sessions'] == 0 and fds[-1] > fds[0]:
            lines.append("")
            lines.append("会话已全部结束但文件描述符仍在增长，可能存在连接泄漏")

        lines.append("=" * 80)
        return "\n".join(lines)


def main():
    parser = argparse.ArgumentParser(description='WebSocket 中继资源监控工具')
    parser.add_argument('pid', type=int, help='要监控的中继进程 PID')
    parser.add_argument('--interval', type=float, default=5, help='检查间隔 (秒)')
    parser.add_argument('--duration', type=float, default=None, help='监控时长 (秒)')
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    try:
        monitor = ResourceMonitor(args.pid, args.interval)
        asyncio.run(monitor.monitor_loop(duration=args.duration))
    except KeyboardInterrupt:
        print("\n监控已中断")
    except psutil.NoSuchProcess:
        print(f"进程 {args.pid} 不存在", file=sys.stderr)
        return 1

    print("\n" + monitor.generate_report())
    return 0


if __name__ == '__main__':
    sys.exit(main())
