from quoteflow import db
from sqlalchemy.orm import relationship


class QuotationItem(db.Model):
    __tablename__ = "quotation_items"

    id = db.Column(db.Integer, primary_key=True)
    quotation_id = db.Column(db.Integer, db.ForeignKey("quotations.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    description = db.Column(db.String(255), nullable=True)
    quantity = db.Column(db.Numeric(18, 4), nullable=False)
    unit_price = db.Column(db.Numeric(18, 4), nullable=False)
    tax_rate = db.Column(db.Numeric(7, 4), nullable=False, default=0)  # 税率(%)
    discount_type = db.Column(db.String(20), nullable=True)  # percentage / fixed
    discount_value = db.Column(db.Numeric(18, 4), nullable=True)
    line_total = db.Column(db.Numeric(14, 2), nullable=False, default=0)  # 値引後・税抜

    quotation = relationship("Quotation", back_populates="items")

    @property
    def discount(self):
        if not self.discount_type:
            return None
        return {"type": self.discount_type, "value": f"{self.discount_value:f}"}

    def as_calc_input(self):
        return {
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "tax_rate": self.tax_rate,
            "discount": self.discount,
        }

    def as_input(self):
        """Item in the shape create/update accept (used when copying a quotation)."""
        return dict(self.as_calc_input(), description=self.description)

    def to_dict(self):
        return {
            "id": self.id,
            "position": self.position,
            "description": self.description,
            "quantity": f"{self.quantity:f}",
            "unit_price": f"{self.unit_price:f}",
            "tax_rate": f"{self.tax_rate:f}",
            "discount": self.discount,
            "line_total": f"{self.line_total:f}" if self.line_total is not None else None,
        }

    def __repr__(self):
        return f"<QuotationItem id={self.id} quotation_id={self.quotation_id} position={self.position}>"
