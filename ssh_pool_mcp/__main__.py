from ssh_pool_mcp.config_manager import ConfigManager
from ssh_pool_mcp.logger import setup_logger
from ssh_pool_mcp.mcp_server import create_mcp_server, run_stdio_server


def main() -> int:
    """
    SSH Pool MCP 服务器主入口

    通过 stdio 运行，SIGINT/SIGTERM 时关闭全部SSH会话后退出
    """
    # 1. 加载配置
    config_manager = ConfigManager.load()

    # 2. 设置日志
    setup_logger(config_manager.settings)

    # 3. 创建 MCP 服务器
    mcp = create_mcp_server(settings=config_manager.settings)

    # 4. 运行 stdio 服务器
    run_stdio_server(mcp)

    return 0


if __name__ == "__main__":
    import sys

    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        print(f"启动失败: {e}", file=sys.stderr)
        import traceback

        traceback.print_exc()
        sys.exit(1)
