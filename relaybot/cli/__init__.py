"""relaybot 的命令行入口。"""
