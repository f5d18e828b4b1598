"""Media Order 订单服务"""
