from django.contrib import admin

from .models import Order, Product


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("sku", "name", "price", "sale_price", "stock", "is_active")
    search_fields = ("sku", "name")
    list_filter = ("is_active",)


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_id", "status", "payment_status", "payment_method", "total", "customer_email", "created_at")
    search_fields = ("order_id", "customer_id", "customer_email")
    list_filter = ("status", "payment_status", "payment_method", "created_at")
    readonly_fields = ("items", "subtotal", "shipping_fee", "discount", "total", "created_at", "updated_at", "paid_at")
    ordering = ("-created_at",)
