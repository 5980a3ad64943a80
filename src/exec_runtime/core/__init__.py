"""Core：进程启动、输出捕获、前台执行、session 注册表与控制面。"""
