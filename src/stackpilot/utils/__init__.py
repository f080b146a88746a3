"""通用工具：日志、输出解析和SSH客户端"""
