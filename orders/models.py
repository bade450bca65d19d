from django.db import models


class Product(models.Model):
    sku = models.CharField(max_length=64, unique=True, db_index=True)
    name = models.CharField(max_length=200)
    price = models.DecimalField(max_digits=12, decimal_places=2)
    sale_price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    stock = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def effective_price(self):
        return self.sale_price if self.sale_price is not None else self.price

    def __str__(self):
        return f"{self.sku} {self.name}"


class Order(models.Model):
    STATUS_PENDING = "pending"
    STATUS_PROCESSING = "processing"
    STATUS_SHIPPED = "shipped"
    STATUS_DELIVERED = "delivered"
    STATUS_CANCELLED = "cancelled"
    STATUS_CHOICES = [
        (STATUS_PENDING, "Pending"),
        (STATUS_PROCESSING, "Processing"),
        (STATUS_SHIPPED, "Shipped"),
        (STATUS_DELIVERED, "Delivered"),
        (STATUS_CANCELLED, "Cancelled"),
    ]

    PAYMENT_PENDING = "pending"
    PAYMENT_PAID = "paid"
    PAYMENT_FAILED = "failed"
    PAYMENT_REFUNDED = "refunded"
    PAYMENT_STATUS_CHOICES = [
        (PAYMENT_PENDING, "Pending"),
        (PAYMENT_PAID, "Paid"),
        (PAYMENT_FAILED, "Failed"),
        (PAYMENT_REFUNDED, "Refunded"),
    ]

    COD = "cod"
    PAYMENT_METHOD_CHOICES = [
        (COD, "Cash on Delivery"),
        ("gcash", "GCash"),
        ("paymaya", "PayMaya"),
        ("grabpay", "GrabPay"),
        ("card", "Credit/Debit Card"),
        ("bank", "Online Banking"),
    ]

    order_id = models.CharField(max_length=20, unique=True, db_index=True)
    customer_id = models.CharField(max_length=64, blank=True, default="", db_index=True)
    customer_email = models.EmailField(blank=True, default="")

    # price snapshot taken at checkout; never re-joined against Product
    items = models.JSONField(default=list)
    shipping_address = models.JSONField(default=dict)
    payment_method = models.CharField(max_length=32, choices=PAYMENT_METHOD_CHOICES)

    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_PENDING, db_index=True)
    payment_status = models.CharField(
        max_length=16, choices=PAYMENT_STATUS_CHOICES, default=PAYMENT_PENDING, db_index=True
    )

    subtotal = models.DecimalField(max_digits=12, decimal_places=2)
    shipping_fee = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    coupon_code = models.CharField(max_length=32, blank=True, default="")
    total = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=8, default="PHP")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    paid_at = models.DateTimeField(null=True, blank=True)

    @property
    def is_cod(self) -> bool:
        return self.payment_method == self.COD

    @property
    def is_paid(self) -> bool:
        return self.payment_status == self.PAYMENT_PAID

    def __str__(self):
        return f"{self.order_id} ({self.status}/{self.payment_status})"
