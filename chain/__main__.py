"""Command line interface for checking the chain endpoint"""
import sys

from . import client, NodeConnectionError, NodeAuthError, ChainError

def check_endpoint(signature=None):
    """Query a few read methods and print the results"""
    try:
        print("\nChain endpoint:", client.url)
        print("-" * 50)

        version = client.get_version()
        print(f"1. Node version: {version}")

        slot = client.get_slot()
        print(f"2. Current slot: {slot}")

        if signature:
            statuses = client.get_signature_statuses([signature], {'searchTransactionHistory': True})
            print(f"3. Status of {signature}: {statuses.get('value', [None])[0]}")

    except NodeConnectionError as e:
        print("\nFailed to connect to chain endpoint:")
        print(f"  {str(e)}")

    except NodeAuthError as e:
        print("\nAuthentication failed:")
        print(f"  {str(e)}")
        print("\nPlease check rpc_user and rpc_password in settings.conf")

    except ChainError as e:
        print(f"\nChain Error [{e.code}] in {e.method}:")
        print(f"  {str(e)}")

if __name__ == "__main__":
    check_endpoint(sys.argv[1] if len(sys.argv) > 1 else None)
