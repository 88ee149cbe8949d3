import asyncio
import sys
import os
import uuid
from decimal import Decimal

# Aggiungi backend/ alla PYTHONPATH per importare app.*
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "backend"))

from app.core.database import AsyncSessionLocal, engine
from app.core.security import create_access_token
from app.models import Base, Order, OrderLine, Product, Table
from app.schemas.operator import Operator, OperatorRole


async def seed():
    """Dati minimi per provare la cassa in sviluppo: due tavoli e un'ordinazione aperta."""
    async with AsyncSessionLocal() as db:
        async with db.begin():
            tavolo = Table(number="1", status="occupied")
            db.add_all([tavolo, Table(number="2", status="free")])
            acqua = Product(name="Acqua naturale", price=Decimal("2.50"))
            pizza = Product(name="Margherita", price=Decimal("7.00"))
            db.add_all([acqua, pizza])
            await db.flush()

            ordine = Order(table_id=tavolo.id, order_type="table", status="delivered")
            db.add(ordine)
            await db.flush()
            db.add_all([
                OrderLine(order_id=ordine.id, product_id=pizza.id, product_name=pizza.name,
                          line_number=1, quantity=2, unit_price=pizza.price),
                OrderLine(order_id=ordine.id, product_id=acqua.id, product_name=acqua.name,
                          line_number=2, quantity=1, unit_price=acqua.price),
            ])
    print(f"Creata ordinazione di prova {ordine.id} sul tavolo 1")


async def reset():
    print("Connessione al database, eliminazione tabelle...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        print("Tabelle eliminate. Creazione nuove tabelle...")
        await conn.run_sync(Base.metadata.create_all)
    print("Database resettato con successo!")

    await seed()

    cassiere = Operator(id=uuid.uuid4(), name="Cassa 1", role=OperatorRole.CASHIER)
    print("Token di sviluppo per la cassa:")
    print(create_access_token(cassiere, expires_minutes=12 * 60))
    await engine.dispose()

if __name__ == "__main__":
    asyncio.run(reset())
