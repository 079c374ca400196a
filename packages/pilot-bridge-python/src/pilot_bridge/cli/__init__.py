"""pilot-bridge 命令行入口。"""
