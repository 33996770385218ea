from .base import Base
from .order import Order, OrderStatus, TERMINAL_ORDER_STATUSES
from .product import Product, ProductSize
from .order_item import OrderItem
from .payment import Payment, PaymentStatus
from .stock_decrement import StockDecrement
from .order_event import OrderEvent
