"""路由模块"""
