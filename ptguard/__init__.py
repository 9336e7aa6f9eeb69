"""
PTGuard - PT站账号健康监控与自动抓种熔断
"""

VERSION = "1.0.0"
