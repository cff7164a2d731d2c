"""
入口转发

本项目以可复用的包与 CLI 提供：
  - 包名: ble_fusion_locator
  - CLI: ble-fusion-locator

此文件仅用于兼容 `python main.py` 的运行方式，会转发到 `ble_fusion_locator.cli:main`。
"""

import sys

from ble_fusion_locator.cli import main as _cli_main
from ble_fusion_locator.cli import setup_logging as _setup_logging


def main():
    # 确保直接运行也有全局日志输出
    _setup_logging()
    return _cli_main()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
