"""
Supplier balance math

One formula, used by the settlement engine when it freezes a shipment's
figures and by the report projector when it reproduces them:

    net_sales          = total_sales - late_returns_value
    company_commission = net_sales * commission_rate
    final_balance      = net_sales - company_commission - supplier_expenses
                         + previous_balance - supplier_payments
"""
from dataclasses import dataclass
from decimal import Decimal

from shipment_ledger.core.quantities import Money, money


@dataclass(frozen=True)
class SupplierBalance:
    """Settlement figures for one shipment, all rounded to cents."""
    total_sales: Money
    late_returns_value: Money
    net_sales: Money
    commission_rate: Decimal
    company_commission: Money
    supplier_expenses: Money
    previous_balance: Money
    supplier_payments: Money
    final_balance: Money


def compute_supplier_balance(
    *,
    total_sales,
    late_returns_value,
    commission_rate,
    supplier_expenses,
    previous_balance,
    supplier_payments,
) -> SupplierBalance:
    """Apply the balance chain formula. Inputs may be Decimal, int or str."""
    rate = Decimal(str(commission_rate))
    sales = money(total_sales)
    returns_value = money(late_returns_value)
    net_sales = money(sales - returns_value)
    commission = money(net_sales * rate)
    expenses = money(supplier_expenses)
    previous = money(previous_balance)
    payments = money(supplier_payments)

    return SupplierBalance(
        total_sales=sales,
        late_returns_value=returns_value,
        net_sales=net_sales,
        commission_rate=rate,
        company_commission=commission,
        supplier_expenses=expenses,
        previous_balance=previous,
        supplier_payments=payments,
        final_balance=money(net_sales - commission - expenses + previous - payments),
    )
