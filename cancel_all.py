"""Script to show open orders and balances for PMM_SYMBOL and cancel them all."""
import asyncio
import os
import sys

from dotenv import load_dotenv

from pmmbot.exchange.errors import ExchangeError
from pmmbot.exchange.mexc import MexcClient

# Load environment - try local first, then VPS path
if os.path.exists('.env'):
    load_dotenv('.env')
else:
    load_dotenv('/opt/pmmbot/.env')

symbol = os.environ['PMM_SYMBOL'].strip().upper()
api_key = os.environ['PMM_API_KEY']
api_secret = os.environ['PMM_API_SECRET']
base_url = os.environ.get('PMM_BASE_URL', 'https://api.mexc.com')


async def main() -> int:
    client = MexcClient(base_url, api_key=api_key, api_secret=api_secret)
    try:
        print(f"=== Balances ===")
        for b in await client.get_balances():
            if b.total > 0:
                print(f'{b.asset}: available={b.available}, locked={b.locked}')

        print(f"\n=== Open Orders ({symbol}) ===")
        orders = await client.get_open_orders(symbol)
        print(f'Total open orders: {len(orders)}')
        for o in orders:
            print(f'  {o.order_id}: {o.side.value} {o.quantity} @ {o.price} (filled {o.filled_quantity})')

        if not orders:
            return 0

        if len(sys.argv) > 1 and sys.argv[1] == '--yes':
            confirm = 'yes'
        else:
            confirm = input("\nCancel ALL orders? Type 'yes' to confirm: ")
        if confirm.lower() != 'yes':
            print("Cancelled. No orders were modified.")
            return 0

        print("\nCancelling all orders...")
        try:
            count = await client.cancel_all_orders(symbol)
            print(f"  Bulk cancel: {count} orders")
        except ExchangeError as e:
            # Fall back to one-by-one cancels
            print(f"  Bulk failed ({e}), trying individual...")
            for o in orders:
                res = await client.cancel_order(symbol, o.order_id)
                if res.success:
                    print(f"    Cancelled {o.order_id}")
                else:
                    print(f"    Failed {o.order_id}: {res.error}")
                await asyncio.sleep(0.1)  # Rate limit

        print("\n=== Done ===")
        return 0
    except ExchangeError as e:
        print(f"Exchange error: {e}")
        return 1
    finally:
        await client.close()


if __name__ == '__main__':
    sys.exit(asyncio.run(main()))
