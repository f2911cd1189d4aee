"""
Xray Tunnel - 多协议代理隧道管理
自动测速、按延迟切换服务器、订阅与路由规则自动更新
"""
__version__ = "0.1.0"
