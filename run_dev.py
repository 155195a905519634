#!/usr/bin/env python3
"""
开发环境启动脚本

功能:
1. 自动加载 settings.yaml / .env 配置
2. 支持热重载
3. 可配置端口和主机

使用方式:
    python run_dev.py
    python run_dev.py --port 8080
    python run_dev.py --no-reload
    python run_dev.py --memory      # 不落盘, 使用内存存储
"""

import argparse
import os

import uvicorn


def main():
    parser = argparse.ArgumentParser(description="BranchChat Backend Dev Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--reload", action="store_true", default=True, help="Enable auto-reload (default: True)")
    parser.add_argument("--no-reload", dest="reload", action="store_false", help="Disable auto-reload")
    parser.add_argument("--memory", action="store_true", help="Use the in-memory store instead of the database")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"], help="Log level")

    args = parser.parse_args()

    # Settings 从环境变量读取, 必须在导入 main 之前设置
    if args.memory:
        os.environ["DATABASE_URL"] = "memory://"
    os.environ.setdefault("LOG_LEVEL", args.log_level.upper())

    print(f"""
╔══════════════════════════════════════════════════════════════╗
║              🌿 BranchChat Backend                           ║
╠══════════════════════════════════════════════════════════════╣
║  Host:     {args.host:<48} ║
║  Port:     {args.port:<48} ║
║  Reload:   {str(args.reload):<48} ║
║  Memory:   {str(args.memory):<48} ║
║  Log:      {args.log_level:<48} ║
╠══════════════════════════════════════════════════════════════╣
║  API Docs: http://{args.host}:{args.port}/docs{' ' * 28}║
╚══════════════════════════════════════════════════════════════╝
    """)

    uvicorn.run(
        "main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
        reload_dirs=["branchchat", "api"] if args.reload else None,
    )


if __name__ == "__main__":
    main()
