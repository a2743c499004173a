#!/usr/bin/env python3

import requests
import json
import argparse
import time


class DashboardClient:
    def __init__(self, base_url="http://localhost:8085", api_token=None):
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-API-Token": api_token} if api_token else {}

    def _get(self, path):
        response = requests.get(f"{self.base_url}{path}", headers=self.headers)
        response.raise_for_status()
        return response.json()

    def _post(self, path, data=None):
        response = requests.post(f"{self.base_url}{path}", json=data, headers=self.headers)
        response.raise_for_status()
        return response.json()

    def get_overview(self):
        """Get the dashboard overview"""
        return self._get("/dashboard")

    def list_feeds(self):
        """List all feeds with their current state"""
        return self._get("/dashboard/feeds")["feeds"]

    def get_feed(self, index):
        """Get one feed's state"""
        return self._get(f"/dashboard/feeds/{index}")

    def set_break(self, index, on_break, slot=None):
        """Put a feed on break (slot 1 or 2) or take it off"""
        return self._post(f"/dashboard/feeds/{index}/break", {"on_break": on_break, "slot": slot})

    def reload(self):
        """Re-read configuration and rebuild the feed set"""
        return self._post("/dashboard/reload")

    def get_break_mode(self):
        return self._get("/api/break-mode")

    def get_health(self):
        """Get health status"""
        return self._get("/health")

    def print_status(self):
        """Print a status table of all feeds"""
        overview = self.get_overview()
        feeds = self.list_feeds()

        print("=" * 72)
        print(f"CREW DASHBOARD - {overview.get('event_name') or 'Unknown event'}")
        print("=" * 72)
        if overview.get("expired"):
            print("This dashboard has expired.")
        print(f"Bandwidth: {overview['bandwidth']}")
        print()
        print(f"{'#':<3}{'Feed':<22}{'Status':<14}{'Duration':<11}{'Mbps':<7}{'Blocked':<8}")
        print("-" * 72)
        for feed in feeds:
            status = feed["status"]
            if feed["phase"] == "break" and feed.get("break_slot"):
                status = f"{status} ({feed['break_slot']})"
            print(f"{feed['index']:<3}{feed['name'][:20]:<22}{status:<14}"
                  f"{feed['duration']:<11}{feed['bitrate_mbps']:<7}"
                  f"{'yes' if feed['confirmed_not_live'] else '':<8}")
        print()


def main():
    parser = argparse.ArgumentParser(description="crew-dashboard producer client")
    parser.add_argument("--base-url", default="http://localhost:8085",
                        help="Base URL of the dashboard service")
    parser.add_argument("--token", help="Producer API token")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # List feeds
    subparsers.add_parser("list", help="List all feeds")

    # Feed info
    info_parser = subparsers.add_parser("info", help="Get feed information")
    info_parser.add_argument("index", type=int, help="Feed index")

    # Break on
    break_parser = subparsers.add_parser("break", help="Put a feed on break")
    break_parser.add_argument("index", type=int, help="Feed index")
    break_parser.add_argument("--slot", type=int, choices=[1, 2], default=1,
                              help="Break video slot")

    # Break off
    live_parser = subparsers.add_parser("live", help="Take a feed off break")
    live_parser.add_argument("index", type=int, help="Feed index")

    # Reload
    subparsers.add_parser("reload", help="Reload configuration")

    # Status table
    subparsers.add_parser("status", help="Show feed status table")

    # Health
    subparsers.add_parser("health", help="Check health")

    # Monitor
    subparsers.add_parser("monitor", help="Monitor in real-time")

    args = parser.parse_args()

    client = DashboardClient(args.base_url, args.token)

    try:
        if args.command == "list":
            for feed in client.list_feeds():
                print(f"{feed['index']}: {feed['name']} - {feed['status']}")

        elif args.command == "info":
            print(json.dumps(client.get_feed(args.index), indent=2))

        elif args.command == "break":
            result = client.set_break(args.index, True, args.slot)
            print(f"Feed {args.index}: {result['feed']['status']}"
                  f"{'' if result['saved'] else ' (not saved on server)'}")

        elif args.command == "live":
            result = client.set_break(args.index, False)
            print(f"Feed {args.index}: {result['feed']['status']}"
                  f"{'' if result['saved'] else ' (not saved on server)'}")

        elif args.command == "reload":
            print(client.reload()["message"])

        elif args.command == "status":
            client.print_status()

        elif args.command == "health":
            print(json.dumps(client.get_health(), indent=2))

        elif args.command == "monitor":
            print("Monitoring crew-dashboard (Press Ctrl+C to stop)...")
            try:
                while True:
                    client.print_status()
                    time.sleep(5)
            except KeyboardInterrupt:
                print("\nMonitoring stopped.")

        else:
            parser.print_help()

    except requests.RequestException as e:
        print(f"Error: {e}")


if __name__ == "__main__":
    main()
